"""
Typed failures raised by the cartridge core.

Every error carries a stable error_code and the HTTP status the API layer
answers with. Messages are safe to return to clients: raw git output is
logged by the gateway, never placed in an exception message.
"""


class CartridgeError(Exception):
    """Base class for all cartridge core failures."""
    error_code = "CARTRIDGE_ERROR"
    status_code = 500


class InvalidReference(CartridgeError):
    """Reference does not match the allowed syntax."""
    error_code = "INVALID_REFERENCE"
    status_code = 400


class UnknownCommit(CartridgeError):
    """Reference is well-formed but does not exist in the repository."""
    error_code = "UNKNOWN_COMMIT"
    status_code = 404


class InvalidPath(CartridgeError):
    """In-repository path is absolute or escapes the repository root."""
    error_code = "INVALID_PATH"
    status_code = 400


class PathNotFound(CartridgeError):
    """Path does not exist at the requested commit."""
    error_code = "PATH_NOT_FOUND"
    status_code = 404


class ManifestNotFound(CartridgeError):
    """Manifest file is missing at the requested commit."""
    error_code = "MANIFEST_NOT_FOUND"
    status_code = 404


class EmptyManifest(CartridgeError):
    """Manifest exists but does not contain a non-empty mapping."""
    error_code = "EMPTY_MANIFEST"
    status_code = 422


class NotBuildable(CartridgeError):
    """Commit has no build hook."""
    error_code = "NOT_BUILDABLE"
    status_code = 409


class QueueFull(CartridgeError):
    """Build rejected because the concurrency ceiling is reached."""
    error_code = "QUEUE_FULL"
    status_code = 429


class BuildFailed(CartridgeError):
    """Build hook exited non-zero, timed out, or the pipeline could not run."""
    error_code = "BUILD_FAILED"
    status_code = 500


class RepositoryCommandFailed(CartridgeError):
    """Unexpected git failure not covered by a more specific error."""
    error_code = "REPOSITORY_COMMAND_FAILED"
    status_code = 502

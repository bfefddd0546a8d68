"""cartserver: serves cartridge manifests, source archives and cached builds from a git repository."""

__version__ = "1.0.0"

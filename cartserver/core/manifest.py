"""
Cartridge manifest loading and derivation.

The manifest lives at metadata/manifest.yml inside the repository. A
derived manifest is what clients download: the same document with a
Source-Url pointing back at this server and a commit-qualified version.
"""
import copy
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional, Union

import yaml

from cartserver.core.errors import EmptyManifest, ManifestNotFound, PathNotFound

logger = logging.getLogger(__name__)

MANIFEST_PATH = "metadata/manifest.yml"
BUILD_HOOK_PATH = ".openshift/action_hooks/build"

NAME_KEY = "Name"
DISPLAY_NAME_KEY = "Display-Name"
VERSION_KEY = "Cartridge-Version"
SOURCE_URL_KEY = "Source-Url"

DEFAULT_CARTRIDGE_VERSION = "0.0.1"
VERSION_PATTERN = re.compile(r"\A\d+(?:\.\d+)*\Z")

FLOAT_TAG = "tag:yaml.org,2002:float"
STR_TAG = "tag:yaml.org,2002:str"


class _ManifestLoader(yaml.SafeLoader):
    """
    SafeLoader that reads an unquoted Cartridge-Version such as 1.10 as text.

    Every other value keeps its normal YAML type.
    """

    def construct_mapping(self, node, deep=False):
        for key_node, value_node in node.value:
            if (
                isinstance(key_node, yaml.ScalarNode)
                and key_node.value == VERSION_KEY
                and isinstance(value_node, yaml.ScalarNode)
                and value_node.tag == FLOAT_TAG
            ):
                value_node.tag = STR_TAG
        return super().construct_mapping(node, deep=deep)


@dataclass(frozen=True)
class Manifest:
    """Parsed manifest: the well-known keys plus everything else, in order."""
    name: Optional[Any] = None
    display_name: Optional[Any] = None
    cartridge_version: Optional[Any] = None
    extra: dict = field(default_factory=dict)
    key_order: tuple = ()

    @classmethod
    def parse(cls, contents: Union[bytes, str]) -> "Manifest":
        """
        Parse manifest YAML.

        Raises:
            EmptyManifest: If the document is blank, not YAML, or not a
                non-empty mapping
        """
        if isinstance(contents, bytes):
            try:
                contents = contents.decode("utf-8")
            except UnicodeDecodeError:
                raise EmptyManifest("Manifest is not valid UTF-8")

        try:
            document = yaml.load(contents, Loader=_ManifestLoader)
        except yaml.YAMLError as e:
            logger.info(f"manifest_parse_failed error={type(e).__name__}")
            raise EmptyManifest("Manifest is not valid YAML")

        if not isinstance(document, dict) or not document:
            raise EmptyManifest("Manifest does not contain any entries")
        return cls.from_mapping(document)

    @classmethod
    def from_mapping(cls, document: dict) -> "Manifest":
        document = copy.deepcopy(document)
        known = (NAME_KEY, DISPLAY_NAME_KEY, VERSION_KEY)
        return cls(
            name=document.get(NAME_KEY),
            display_name=document.get(DISPLAY_NAME_KEY),
            cartridge_version=document.get(VERSION_KEY),
            extra={k: v for k, v in document.items() if k not in known},
            key_order=tuple(document.keys()),
        )

    def to_mapping(self) -> dict:
        """Fresh copy of the document in its original key order."""
        known = {
            NAME_KEY: self.name,
            DISPLAY_NAME_KEY: self.display_name,
            VERSION_KEY: self.cartridge_version,
        }
        document = {}
        for key in self.key_order:
            if key in known:
                document[key] = known[key]
            else:
                document[key] = copy.deepcopy(self.extra[key])
        return document


@dataclass(frozen=True)
class DerivedManifest:
    """Manifest as presented to clients. Built per request, never cached."""
    commit_id: str
    document: dict

    @property
    def name(self) -> Optional[Any]:
        return self.document.get(NAME_KEY)

    @property
    def cartridge_version(self) -> Any:
        return self.document[VERSION_KEY]

    @property
    def source_url(self) -> str:
        return self.document[SOURCE_URL_KEY]

    def to_yaml(self) -> str:
        return yaml.safe_dump(
            self.document,
            sort_keys=False,
            default_flow_style=False,
            allow_unicode=True,
        )


def qualify_version(version: Optional[Any], commit_id: str) -> Any:
    """
    Append the short commit id to a dotted-numeric version.

    A missing version becomes DEFAULT_CARTRIDGE_VERSION first; anything
    that is not dotted-numeric is returned unchanged.
    """
    if version is None:
        base = DEFAULT_CARTRIDGE_VERSION
    else:
        base = str(version).strip()
        if not VERSION_PATTERN.match(base):
            return version
    return f"{base}-{commit_id[:8]}"


def resolve(gateway, reference: str) -> tuple[str, Manifest]:
    """Resolve a reference and load the manifest stored at that commit."""
    commit_id = gateway.resolve(reference)
    try:
        contents = gateway.read_file(MANIFEST_PATH, commit_id)
    except PathNotFound:
        raise ManifestNotFound(f"{MANIFEST_PATH} not found at {commit_id[:8]}")
    return commit_id, Manifest.parse(contents)


def with_source(manifest: Manifest, commit_id: str, source_url: str) -> DerivedManifest:
    """Derive the client-facing manifest. The input manifest is not modified."""
    document = manifest.to_mapping()
    document[VERSION_KEY] = qualify_version(manifest.cartridge_version, commit_id)
    document[SOURCE_URL_KEY] = str(source_url)
    return DerivedManifest(commit_id=commit_id, document=document)


def is_buildable(gateway, commit_id: str, hook_path: str = BUILD_HOOK_PATH) -> bool:
    """True iff the commit carries a build hook."""
    return gateway.path_exists(hook_path, commit_id)

"""
Asset reference resolution.

Snapshots store image references in three shapes: inline data written by
the editor before upload, legacy absolute storage URLs, and bucket-relative
paths. They are classified once here into a tagged union and resolved to
an object path without any I/O.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Union
from urllib.parse import urlparse

logger = logging.getLogger(__name__)

INLINE_PREFIXES = ("data:", "blob:")
INLINE_PAYLOAD_MARKER = ";base64,"
URL_PREFIXES = ("http://", "https://")

DEFAULT_PRIVATE_MARKER = "signatures"
DEFAULT_PUBLIC_MARKER = "logos"


@dataclass(frozen=True)
class InlineAsset:
    """Displayed verbatim, never signed."""
    value: str


@dataclass(frozen=True)
class LegacyUrl:
    """Absolute URL whose object path must be extracted."""
    url: str


@dataclass(frozen=True)
class RelativePath:
    """Path relative to the private bucket."""
    path: str


AssetReference = Union[InlineAsset, LegacyUrl, RelativePath]


@dataclass(frozen=True)
class ResolvedPath:
    """An object path in the private bucket, plus the reference it came from."""
    path: str
    original: str


def _strip_query(value: str) -> str:
    return value.split("?", 1)[0].split("#", 1)[0]


def classify(ref: Optional[str]) -> Optional[AssetReference]:
    """Tag a stored reference; blank references carry no asset."""
    if ref is None:
        return None
    value = ref.strip()
    if not value:
        return None
    if value.startswith(INLINE_PREFIXES) or INLINE_PAYLOAD_MARKER in value:
        return InlineAsset(value)
    if value.lower().startswith(URL_PREFIXES):
        return LegacyUrl(value)
    return RelativePath(value)


def _path_from_url(url: str, private_marker: str) -> Optional[str]:
    marker = f"/{private_marker}/"
    if marker in url:
        path = _strip_query(url.split(marker, 1)[1])
        return path or None

    # Bucket convention is folder/filename: keep the last two segments.
    segments = [s for s in urlparse(url).path.split("/") if s]
    if len(segments) < 2:
        return None
    return "/".join(segments[-2:])


def _clean_relative(path: str, private_marker: str) -> Optional[str]:
    path = _strip_query(path).lstrip("/")
    prefix = f"{private_marker}/"
    if path.startswith(prefix):
        path = path[len(prefix):]
    return path or None


def resolve(
    ref: Optional[str],
    private_marker: str = DEFAULT_PRIVATE_MARKER,
) -> Union[ResolvedPath, InlineAsset, None]:
    """
    Resolve a stored reference to something displayable.

    Returns None when there is no asset, an InlineAsset when the reference
    must be shown as is (inline data, or input that cannot be turned into a
    path), and a ResolvedPath when it should be signed.
    """
    asset = classify(ref)
    if asset is None:
        return None
    if isinstance(asset, InlineAsset):
        return asset

    if isinstance(asset, LegacyUrl):
        path = _path_from_url(asset.url, private_marker)
        original = asset.url
    else:
        path = _clean_relative(asset.path, private_marker)
        original = asset.path

    if not path or ".." in path.split("/"):
        logger.debug("Asset reference could not be resolved, using it verbatim")
        return InlineAsset(original)
    return ResolvedPath(path=path, original=original)


def is_public_reference(ref: Optional[str], public_marker: str = DEFAULT_PUBLIC_MARKER) -> bool:
    """True for references into the public branding bucket, which are never signed."""
    asset = classify(ref)
    if isinstance(asset, LegacyUrl):
        return f"/{public_marker}/" in asset.url
    if isinstance(asset, RelativePath):
        return asset.path.lstrip("/").startswith(f"{public_marker}/")
    return False

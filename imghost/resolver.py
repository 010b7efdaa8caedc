import logging
import re
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional, Tuple

from . import storage
from .errors import NotFound, ValidationError
from .identity import Owner, can_use_subdomain, find_owner_by_handle, list_owners
from .security import sanitize_log_value


MAX_FILENAME_LENGTH = 255
IMAGE_NOT_FOUND = "Image not found"

CONTENT_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
    ".svg": "image/svg+xml",
}
DEFAULT_CONTENT_TYPE = "application/octet-stream"

_FILENAME_PATTERN = re.compile(r"^[A-Za-z0-9._-]+$")
_TENANT_PATTERN = re.compile(r"^[a-z0-9.-]+$")

logger = logging.getLogger("imghost.resolver")


@dataclass
class ResolvedFile:
    path: Path
    filename: str
    content_type: str
    owner: Optional[Owner] = None

    @property
    def size(self) -> int:
        return self.path.stat().st_size


def extract_tenant(hostname: Optional[str], domain: Optional[str] = None) -> Optional[str]:
    """Return the label in front of *domain* in *hostname*, if any.

    ``None`` means the request is not tenant scoped (bare domain, foreign
    host, missing host). Labels that are not plausible host labels are
    returned as-is so the caller can reject them with a 404.
    """

    if not hostname:
        return None
    domain = (domain or storage.PUBLIC_DOMAIN).lower().strip(".")
    host = hostname.strip().lower().rstrip(".")
    if host.startswith("["):
        return None
    host = host.rsplit(":", 1)[0] if ":" in host else host
    suffix = f".{domain}"
    if host == domain or not host.endswith(suffix):
        return None
    label = host[: -len(suffix)]
    if label == "www":
        return None
    return label or None


def sanitize_filename(filename: Optional[str]) -> str:
    """Validate a requested file name before it touches the filesystem."""

    if not filename:
        raise ValidationError("Invalid filename")
    if len(filename) > MAX_FILENAME_LENGTH:
        raise ValidationError("Invalid filename")
    if ".." in filename or "/" in filename or "\\" in filename or "\x00" in filename:
        raise ValidationError("Invalid filename")
    if filename.startswith(".") or not _FILENAME_PATTERN.match(filename):
        raise ValidationError("Invalid filename")
    return filename


def confine(root: Path, filename: str) -> Optional[Path]:
    """Resolve *filename* under *root*, or ``None`` when it is not a file there.

    Raises ``ValidationError`` if the resolved path escapes *root*, whatever
    the name looked like.
    """

    root_resolved = Path(root).resolve()
    candidate = (root_resolved / filename).resolve()
    if root_resolved not in candidate.parents:
        logger.warning(
            "path_escape_blocked root=%s filename=%s",
            root_resolved,
            sanitize_log_value(filename),
        )
        raise ValidationError("Invalid file path")
    if not candidate.is_file():
        return None
    return candidate


def content_type_for(filename: str) -> str:
    return CONTENT_TYPES.get(Path(filename).suffix.lower(), DEFAULT_CONTENT_TYPE)


def _tenant_owner(label: Optional[str]) -> Owner:
    if not label or "." in label or not _TENANT_PATTERN.match(label):
        raise NotFound(IMAGE_NOT_FOUND)
    owner = find_owner_by_handle(label)
    if owner is None or not can_use_subdomain(owner):
        logger.info("tenant_denied label=%s", sanitize_log_value(label))
        raise NotFound(IMAGE_NOT_FOUND)
    if not owner.storage_root.is_dir():
        logger.error("tenant_storage_missing owner_id=%s", owner.id)
        raise NotFound(IMAGE_NOT_FOUND)
    return owner


def resolve_tenant_file(hostname: str, filename: str) -> ResolvedFile:
    """Serve *filename* out of the storage root of the tenant named by *hostname*."""

    name = sanitize_filename(filename)
    owner = _tenant_owner(extract_tenant(hostname))
    path = confine(owner.storage_root, name)
    if path is None:
        raise NotFound(IMAGE_NOT_FOUND)
    return ResolvedFile(path=path, filename=name, content_type=content_type_for(name), owner=owner)


def path_fallback_roots() -> List[Tuple[Path, Optional[Owner]]]:
    roots: List[Tuple[Path, Optional[Owner]]] = [(storage.ANONYMOUS_DIR, None)]
    config = storage.get_config()
    if config.get("subdomain_mode") == "enabled":
        return roots
    for owner in list_owners():
        if owner.suspended:
            continue
        roots.append((owner.storage_root, owner))
    return roots


def resolve_path_file(filename: str) -> ResolvedFile:
    """Search the shared anonymous root, then owner roots in handle order."""

    name = sanitize_filename(filename)
    for root, owner in path_fallback_roots():
        if not root.is_dir():
            continue
        path = confine(root, name)
        if path is not None:
            return ResolvedFile(
                path=path, filename=name, content_type=content_type_for(name), owner=owner
            )
    raise NotFound(IMAGE_NOT_FOUND)


def resolve_request(hostname: Optional[str], filename: str) -> ResolvedFile:
    sanitize_filename(filename)
    if extract_tenant(hostname) is None:
        return resolve_path_file(filename)
    return resolve_tenant_file(hostname, filename)


def list_tenant_images(hostname: str) -> Dict[str, object]:
    """Describe the images stored by the tenant named by *hostname*."""

    owner = _tenant_owner(extract_tenant(hostname))
    images = []
    for entry in sorted(owner.storage_root.iterdir(), key=lambda item: item.name):
        if not entry.is_file() or entry.name.startswith("."):
            continue
        if content_type_for(entry.name) == DEFAULT_CONTENT_TYPE:
            continue
        stat = entry.stat()
        images.append(
            {
                "filename": entry.name,
                "url": f"/i/{entry.name}",
                "size": stat.st_size,
                "modified": stat.st_mtime,
            }
        )
    return {"username": owner.handle, "count": len(images), "images": images}

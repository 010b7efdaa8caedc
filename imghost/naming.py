import logging
import os
import re
import secrets
from pathlib import Path
from typing import Iterable, Optional, Union

ALPHABET = "ABCDEFGHJKMNPQRSTUVWXYZ23456789"
MIN_NAME_LENGTH = 4
MAX_NAME_LENGTH = 6
MAX_ATTEMPTS = 10
FALLBACK_SUFFIX_LENGTH = 2
MAX_PUBLISH_ATTEMPTS = 5

IMAGE_EXTENSIONS = {
    ".jpg",
    ".jpeg",
    ".png",
    ".gif",
    ".webp",
    ".bmp",
    ".svg",
    ".tif",
    ".tiff",
    ".ico",
    ".avif",
}

MIMETYPE_EXTENSIONS = {
    "image/jpeg": ".jpg",
    "image/jpg": ".jpg",
    "image/pjpeg": ".jpg",
    "image/png": ".png",
    "image/gif": ".gif",
    "image/webp": ".webp",
    "image/bmp": ".bmp",
    "image/x-ms-bmp": ".bmp",
    "image/svg+xml": ".svg",
    "image/tiff": ".tiff",
    "image/x-icon": ".ico",
    "image/vnd.microsoft.icon": ".ico",
    "image/avif": ".avif",
}

_EXTENSION_PATTERN = re.compile(r"^\.[a-z0-9]{1,10}$")

logger = logging.getLogger("imghost.storage")


def random_name(length: Optional[int] = None) -> str:
    """Return a random name drawn from the unambiguous upload alphabet."""

    if length is None:
        length = MIN_NAME_LENGTH + secrets.randbelow(MAX_NAME_LENGTH - MIN_NAME_LENGTH + 1)
    return "".join(secrets.choice(ALPHABET) for _ in range(length))


def normalise_extension(original_name: Optional[str], mimetype: Optional[str] = None) -> str:
    """Pick the stored extension for an upload.

    The client's extension wins when it is a known image extension; otherwise
    the declared mimetype decides, and anything else is stored without one.
    """

    suffix = Path(original_name or "").suffix.lower()
    if _EXTENSION_PATTERN.match(suffix) and suffix in IMAGE_EXTENSIONS:
        return suffix
    if mimetype:
        mapped = MIMETYPE_EXTENSIONS.get(mimetype.split(";", 1)[0].strip().lower())
        if mapped:
            return mapped
    return ""


def allocate_filename(
    directory: Union[str, Path], extension: str, shared: Iterable[Union[str, Path]] = ()
) -> str:
    """Return a filename not currently present in *directory*.

    Names present in any of the *shared* directories are skipped as well,
    for files whose URL is looked up across several roots. Ten plain
    candidates are tried before falling back to names with a growing random
    suffix. Raises ``FileNotFoundError`` if *directory* does not exist.
    """

    directory = Path(directory)
    if not directory.is_dir():
        raise FileNotFoundError(f"Upload directory does not exist: {directory}")
    searched = [directory] + [Path(path) for path in shared]

    def is_free(candidate: str) -> bool:
        return not any((path / candidate).exists() for path in searched)

    for _ in range(MAX_ATTEMPTS):
        candidate = f"{random_name()}{extension}"
        if is_free(candidate):
            return candidate

    logger.warning("filename_allocation_fallback directory=%s", directory)
    for suffix_length in range(FALLBACK_SUFFIX_LENGTH, FALLBACK_SUFFIX_LENGTH + MAX_ATTEMPTS):
        candidate = f"{random_name()}{random_name(suffix_length)}{extension}"
        if is_free(candidate):
            return candidate

    raise FileExistsError(f"Could not allocate a free filename in {directory}")


def store_new_file(
    directory: Union[str, Path],
    extension: str,
    source_path: Union[str, Path],
    shared: Iterable[Union[str, Path]] = (),
) -> str:
    """Publish *source_path* under a fresh name in *directory* and return the name.

    ``os.link`` fails if the name was taken between allocation and publish,
    so a concurrent upload can never be overwritten and readers never see a
    partially written file under its final name.
    """

    directory = Path(directory)
    shared = list(shared)
    for _ in range(MAX_PUBLISH_ATTEMPTS):
        filename = allocate_filename(directory, extension, shared)
        try:
            os.link(source_path, directory / filename)
        except FileExistsError:
            logger.info("filename_collision directory=%s filename=%s", directory, filename)
            continue
        return filename

    raise FileExistsError(f"Could not publish upload into {directory}")

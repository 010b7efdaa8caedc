import logging
import os
import sqlite3
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Dict, List, Optional

from werkzeug.datastructures import FileStorage

from . import storage
from .errors import AuthError, InternalError, NotFound, QuotaExceeded, ValidationError
from .identity import (
    AuthenticatedIdentity,
    Identity,
    Owner,
    can_use_subdomain,
    record_usage,
    resolve_identity,
)
from .naming import normalise_extension, store_new_file
from .ratelimit import RateDecision, anonymous_rule, authenticated_rules, check_many
from .resolver import confine, content_type_for, path_fallback_roots, sanitize_filename
from .security import sanitize_log_value
from .watermark import WatermarkQueue, apply_watermark, watermark_queue


logger = logging.getLogger("imghost.storage")


@dataclass
class UploadResult:
    url: str
    filename: str
    size: int
    content_type: str
    identity: Identity
    decision: RateDecision
    watermark: str = "none"
    asset_id: Optional[str] = None


def public_base_url(owner: Optional[Owner] = None) -> str:
    if owner is not None and can_use_subdomain(owner):
        return f"{storage.PUBLIC_SCHEME}://{owner.handle}.{storage.PUBLIC_DOMAIN}"
    return f"{storage.PUBLIC_SCHEME}://{storage.PUBLIC_DOMAIN}"


def build_public_url(filename: str, owner: Optional[Owner] = None) -> str:
    """Return the canonical URL of a stored file."""

    return f"{public_base_url(owner)}/i/{filename}"


def _validate_image(file_storage: Optional[FileStorage]) -> str:
    if file_storage is None or not file_storage.filename:
        raise ValidationError("No image file provided")
    mimetype = (file_storage.mimetype or "").lower()
    if not mimetype.startswith("image/"):
        raise ValidationError("Only image files are allowed")
    return mimetype


def _max_upload_bytes(config: Dict[str, object]) -> int:
    return storage.config_int(config, "max_upload_size_mb") * storage.BYTES_PER_MB


def spool_upload(file_storage: FileStorage, max_bytes: int) -> Path:
    """Stream the upload into a private temp file, enforcing *max_bytes*.

    The temp file is removed on any failure, including a client that
    disconnects mid-transfer.
    """

    storage.ensure_directories()
    fd, temp_name = tempfile.mkstemp(dir=storage.INCOMING_DIR, suffix=".tmp")
    temp_path = Path(temp_name)
    total = 0
    try:
        with os.fdopen(fd, "wb") as handle:
            while True:
                chunk = file_storage.stream.read(storage.CHUNK_SIZE_BYTES)
                if not chunk:
                    break
                total += len(chunk)
                if total > max_bytes:
                    raise ValidationError(
                        f"File too large. Maximum size is {max_bytes // storage.BYTES_PER_MB} MB",
                        error="File too large",
                    )
                handle.write(chunk)
            handle.flush()
            os.fsync(handle.fileno())
    except BaseException:
        temp_path.unlink(missing_ok=True)
        raise
    if total == 0:
        temp_path.unlink(missing_ok=True)
        raise ValidationError("Uploaded file is empty")
    return temp_path


def _target_directory(identity: Identity) -> Path:
    if isinstance(identity, AuthenticatedIdentity):
        directory = identity.owner.storage_root
        if not directory.is_dir():
            logger.error("owner_storage_missing owner_id=%s", identity.owner.id)
            raise InternalError("Upload failed")
        return directory
    storage.ANONYMOUS_DIR.mkdir(parents=True, exist_ok=True)
    return storage.ANONYMOUS_DIR


def _shared_directories(directory: Path, owner: Optional[Owner]) -> List[Path]:
    """Other roots searched for path-qualified URLs, which the new name must avoid."""

    if owner is not None and can_use_subdomain(owner):
        return []
    return [root for root, _ in path_fallback_roots() if root != directory]


def _record_statistics(identity: Identity, extension: str, size: int) -> None:
    try:
        if isinstance(identity, AuthenticatedIdentity):
            record_usage(identity.owner.id)
        storage.record_upload_analytics(identity.label, extension.lstrip(".") or "unknown", size)
    except sqlite3.Error:
        logger.exception("upload_statistics_failed user=%s", identity.label)


def handle_upload(
    file_storage: Optional[FileStorage],
    token: Optional[str],
    client_ip: str,
    *,
    queue: Optional[WatermarkQueue] = None,
) -> UploadResult:
    """Validate, rate limit, store and (optionally) watermark one upload."""

    mimetype = _validate_image(file_storage)
    identity = resolve_identity(token, client_ip, strict=True)
    owner = identity.owner
    if owner is not None and owner.suspended:
        raise AuthError("Account suspended", status_code=403, error="Forbidden")

    config = storage.get_config()
    rules = authenticated_rules(owner) if owner is not None else [anonymous_rule(client_ip, config)]
    decision = check_many(rules)
    if not decision.allowed:
        raise QuotaExceeded(decision)

    directory = _target_directory(identity)
    shared = _shared_directories(directory, owner)
    extension = normalise_extension(file_storage.filename, mimetype)
    temp_path = spool_upload(file_storage, _max_upload_bytes(config))

    spec = owner.watermark if owner is not None else None
    queue_watermark = spec is not None and spec.enabled and spec.async_mode
    watermark_state = "queued" if queue_watermark else "none"
    try:
        if spec is not None and spec.enabled and not spec.async_mode:
            original = temp_path.read_bytes()
            marked = apply_watermark(original, spec)
            if marked is not original:
                storage.write_atomic(temp_path, marked)
                watermark_state = "applied"
            else:
                watermark_state = "skipped"
        size = temp_path.stat().st_size
        filename = store_new_file(directory, extension, temp_path, shared)
    except OSError as error:
        logger.exception("upload_store_failed user=%s", identity.label)
        raise InternalError("Upload failed") from error
    finally:
        temp_path.unlink(missing_ok=True)

    final_path = directory / filename
    content_type = content_type_for(filename)
    if content_type == "application/octet-stream":
        content_type = mimetype
    try:
        asset_id = storage.register_asset(
            directory,
            filename,
            size,
            content_type,
            owner_id=owner.id if owner is not None else None,
            uploader_ip=client_ip,
            watermark_state=watermark_state,
        )
    except sqlite3.Error as error:
        final_path.unlink(missing_ok=True)
        logger.exception("upload_register_failed user=%s", identity.label)
        raise InternalError("Upload failed") from error

    if queue_watermark:
        try:
            (queue or watermark_queue).submit(asset_id, final_path, spec)
        except (OSError, sqlite3.Error):
            logger.exception("watermark_enqueue_failed asset_id=%s", asset_id)
            watermark_state = "none"
            storage.set_asset_watermark_state(asset_id, watermark_state)

    _record_statistics(identity, extension, size)

    url = build_public_url(filename, owner)
    logger.info(
        "upload_completed user=%s ip=%s filename=%s size=%d watermark=%s",
        identity.label,
        sanitize_log_value(client_ip),
        filename,
        size,
        watermark_state,
    )
    return UploadResult(
        url=url,
        filename=filename,
        size=size,
        content_type=content_type,
        identity=identity,
        decision=decision,
        watermark=watermark_state,
        asset_id=asset_id,
    )


def delete_asset(filename: str, identity: Identity) -> str:
    """Delete a stored file the caller owns and return its public URL."""

    name = sanitize_filename(filename)
    owner = identity.owner
    directory = owner.storage_root if owner is not None else storage.ANONYMOUS_DIR
    record = storage.get_asset(directory, name) if directory.is_dir() else None
    if record is None:
        raise NotFound("Image not found")
    if owner is not None:
        permitted = record["owner_id"] == owner.id
    else:
        permitted = record["owner_id"] is None and record["uploader_ip"] == identity.ip
    if not permitted:
        logger.info(
            "delete_denied user=%s filename=%s", identity.label, sanitize_log_value(name)
        )
        raise NotFound("Image not found")

    path = confine(directory, name)
    target = path if path is not None else directory / name
    with storage.path_lock(target):
        if path is not None:
            path.unlink(missing_ok=True)
        storage.delete_asset_record(record["id"])

    logger.info("asset_deleted user=%s filename=%s", identity.label, name)
    return build_public_url(name, owner)


def list_owner_assets(owner: Owner, limit: Optional[int] = None) -> List[Dict[str, object]]:
    assets = []
    for row in storage.list_assets(owner.id, limit=limit):
        assets.append(
            {
                "filename": row["filename"],
                "url": build_public_url(row["filename"], owner),
                "size": row["size"],
                "contentType": row["content_type"],
                "createdAt": row["created_at"],
                "watermark": row["watermark_state"],
            }
        )
    return assets

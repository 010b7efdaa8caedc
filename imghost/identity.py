import json
import logging
import re
import sqlite3
import time
import uuid
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional, Tuple, Union

from werkzeug.security import check_password_hash, generate_password_hash

from . import storage
from .errors import AuthError, ConflictError, NotFound, ValidationError
from .security import decrypt_token, encrypt_token, generate_token, hash_token, sanitize_log_value
from .watermark import WatermarkSpec, validate_watermark_settings


HANDLE_PATTERN = re.compile(r"^[a-z0-9](?:[a-z0-9-]{1,18})[a-z0-9]$")
PASSWORD_MIN_LENGTH = 6
PASSWORD_MAX_LENGTH = 128
RESERVED_HANDLES = {"www", "api", "admin", "static", "mail", "health", "root"}

logger = logging.getLogger("imghost.identity")


@dataclass
class Owner:
    id: str
    handle: str
    daily_limit: int
    hourly_limit: int
    usage_count: int
    storage_root: Path
    watermark: WatermarkSpec = field(default_factory=WatermarkSpec)
    suspended: bool = False
    last_used_at: Optional[float] = None
    created_at: float = 0.0
    created_ip: Optional[str] = None

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Owner":
        raw_watermark = None
        if row["watermark"]:
            try:
                raw_watermark = json.loads(row["watermark"])
            except json.JSONDecodeError:
                logger.warning("owner_watermark_unreadable owner_id=%s", row["id"])
        return cls(
            id=row["id"],
            handle=row["handle"],
            daily_limit=int(row["daily_limit"]),
            hourly_limit=int(row["hourly_limit"]),
            usage_count=int(row["usage_count"] or 0),
            storage_root=Path(row["storage_root"]),
            watermark=WatermarkSpec.from_dict(raw_watermark),
            suspended=bool(row["suspended"]),
            last_used_at=row["last_used_at"],
            created_at=float(row["created_at"]),
            created_ip=row["created_ip"],
        )

    def to_public_dict(self) -> Dict[str, object]:
        return {
            "id": self.id,
            "username": self.handle,
            "dailyLimit": self.daily_limit,
            "hourlyLimit": self.hourly_limit,
            "usage": {"count": self.usage_count, "lastUsed": self.last_used_at},
            "suspended": self.suspended,
            "createdAt": self.created_at,
            "watermarkSettings": self.watermark.to_dict(),
        }


@dataclass
class AnonymousIdentity:
    ip: str
    authenticated = False
    owner = None

    @property
    def label(self) -> str:
        return "anonymous"


@dataclass
class AuthenticatedIdentity:
    owner: Owner
    ip: str
    authenticated = True

    @property
    def label(self) -> str:
        return self.owner.handle


Identity = Union[AnonymousIdentity, AuthenticatedIdentity]


def _fetch_owner(query: str, params: Tuple[object, ...]) -> Optional[Owner]:
    with storage.get_db() as conn:
        row = conn.execute(query, params).fetchone()
    return Owner.from_row(row) if row else None


def get_owner(owner_id: str) -> Optional[Owner]:
    return _fetch_owner("SELECT * FROM owners WHERE id = ?", (owner_id,))


def find_owner_by_handle(handle: str) -> Optional[Owner]:
    if not handle:
        return None
    return _fetch_owner("SELECT * FROM owners WHERE handle = ?", (handle.strip().lower(),))


def find_owner_by_token(token: Optional[str]) -> Optional[Owner]:
    """Look up the owner for *token* through the unique token hash index."""

    if not token:
        return None
    return _fetch_owner("SELECT * FROM owners WHERE token_hash = ?", (hash_token(token),))


def resolve_identity(token: Optional[str], ip: str, *, strict: bool = False) -> Identity:
    """Classify a request as anonymous or as one of the registered owners.

    An unknown token resolves to anonymous unless *strict* is set, in which
    case it raises ``AuthError`` (403).
    """

    if not token:
        return AnonymousIdentity(ip=ip)
    owner = find_owner_by_token(token)
    if owner is None:
        if strict:
            logger.info("identity_rejected reason=unknown_token ip=%s", sanitize_log_value(ip))
            raise AuthError("Invalid API key", status_code=403, error="Forbidden")
        return AnonymousIdentity(ip=ip)
    return AuthenticatedIdentity(owner=owner, ip=ip)


def normalise_handle(handle: object) -> str:
    if not isinstance(handle, str):
        raise ValidationError("Username is required")
    normalised = handle.strip().lower()
    if not HANDLE_PATTERN.match(normalised):
        raise ValidationError(
            "Username must be 3-20 characters of lowercase letters, digits or hyphens"
        )
    if normalised in RESERVED_HANDLES:
        raise ValidationError("Username is reserved")
    return normalised


def _validate_password(password: object) -> str:
    if not isinstance(password, str) or len(password) < PASSWORD_MIN_LENGTH:
        raise ValidationError(f"Password must be at least {PASSWORD_MIN_LENGTH} characters long")
    if len(password) > PASSWORD_MAX_LENGTH:
        raise ValidationError(f"Password must be at most {PASSWORD_MAX_LENGTH} characters long")
    return password


def register_owner(handle: object, password: object, ip: Optional[str] = None) -> Tuple[Owner, str]:
    """Create an owner, its storage root and its upload token.

    Returns the owner and the plaintext token, which is only ever handed out
    here, on login and on reset.
    """

    handle = normalise_handle(handle)
    password = _validate_password(password)
    if find_owner_by_handle(handle) is not None:
        raise ConflictError("Username already exists")

    storage_root = storage.USERS_DIR / handle
    storage_root.mkdir(parents=True, exist_ok=True)

    config = storage.get_config()
    owner_id = uuid.uuid4().hex
    token = generate_token()
    try:
        with storage.get_db() as conn:
            conn.execute(
                """
                INSERT INTO owners (
                    id, handle, password_hash, token_hash, token_encrypted,
                    daily_limit, hourly_limit, usage_count, storage_root,
                    watermark, suspended, created_at, created_ip
                )
                VALUES (?, ?, ?, ?, ?, ?, ?, 0, ?, ?, 0, ?, ?)
                """,
                (
                    owner_id,
                    handle,
                    generate_password_hash(password),
                    hash_token(token),
                    encrypt_token(token),
                    storage.config_int(config, "default_daily_limit"),
                    storage.config_int(config, "default_hourly_limit"),
                    str(storage_root),
                    json.dumps(WatermarkSpec().to_dict()),
                    time.time(),
                    ip,
                ),
            )
            conn.commit()
    except sqlite3.IntegrityError as error:
        raise ConflictError("Username already exists") from error

    logger.info("owner_registered owner_id=%s handle=%s", owner_id, handle)
    return get_owner(owner_id), token


def authenticate(handle: object, password: object) -> Tuple[Owner, str]:
    """Verify credentials and return the owner with its current token."""

    if not isinstance(handle, str) or not isinstance(password, str):
        raise AuthError("Invalid credentials")
    with storage.get_db() as conn:
        row = conn.execute(
            "SELECT * FROM owners WHERE handle = ?", (handle.strip().lower(),)
        ).fetchone()
    if row is None or not check_password_hash(row["password_hash"], password):
        logger.info("login_failed handle=%s", sanitize_log_value(handle))
        raise AuthError("Invalid credentials")
    if row["suspended"]:
        raise AuthError("Account suspended", status_code=403, error="Forbidden")

    token = decrypt_token(row["token_encrypted"])
    if token is None or hash_token(token) != row["token_hash"]:
        # Secret key rotated since the token was stored; issue a fresh one.
        token = reset_token(row["id"])
    return Owner.from_row(row), token


def record_usage(owner_id: str) -> None:
    with storage.get_db() as conn:
        conn.execute(
            """
            UPDATE owners
            SET usage_count = usage_count + 1, last_used_at = ?
            WHERE id = ?
            """,
            (time.time(), owner_id),
        )
        conn.commit()


def list_owners() -> List[Owner]:
    with storage.get_db() as conn:
        rows = conn.execute("SELECT * FROM owners ORDER BY handle").fetchall()
    return [Owner.from_row(row) for row in rows]


def _require_owner(owner_id: str) -> Owner:
    owner = get_owner(owner_id)
    if owner is None:
        raise NotFound("User not found")
    return owner


def _coerce_limit(value: object, name: str) -> int:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        raise ValidationError(f"{name} must be a non-negative integer")
    return value


def update_owner(
    owner_id: str,
    *,
    daily_limit: Optional[object] = None,
    hourly_limit: Optional[object] = None,
    suspended: Optional[bool] = None,
) -> Owner:
    _require_owner(owner_id)
    assignments = []
    params: List[object] = []
    if daily_limit is not None:
        assignments.append("daily_limit = ?")
        params.append(_coerce_limit(daily_limit, "dailyLimit"))
    if hourly_limit is not None:
        assignments.append("hourly_limit = ?")
        params.append(_coerce_limit(hourly_limit, "hourlyLimit"))
    if suspended is not None:
        if not isinstance(suspended, bool):
            raise ValidationError("suspended must be a boolean")
        assignments.append("suspended = ?")
        params.append(1 if suspended else 0)
    if not assignments:
        raise ValidationError("No changes supplied")

    params.append(owner_id)
    with storage.get_db() as conn:
        conn.execute(f"UPDATE owners SET {', '.join(assignments)} WHERE id = ?", params)
        conn.commit()
    logger.info("owner_updated owner_id=%s fields=%s", owner_id, len(assignments))
    return get_owner(owner_id)


def reset_token(owner_id: str) -> str:
    """Replace the owner's token; the old one stops working immediately."""

    token = generate_token()
    with storage.get_db() as conn:
        cursor = conn.execute(
            "UPDATE owners SET token_hash = ?, token_encrypted = ? WHERE id = ?",
            (hash_token(token), encrypt_token(token), owner_id),
        )
        conn.commit()
    if cursor.rowcount == 0:
        raise NotFound("User not found")
    logger.info("owner_token_reset owner_id=%s", owner_id)
    return token


def delete_owner(owner_id: str) -> Owner:
    """Remove the owner, its overrides, asset rows, counters, then its files."""

    owner = _require_owner(owner_id)
    with storage.get_db() as conn:
        conn.execute("BEGIN IMMEDIATE")
        conn.execute("DELETE FROM subdomain_overrides WHERE owner_id = ?", (owner_id,))
        conn.execute(
            "UPDATE watermark_jobs SET status = 'cancelled' WHERE asset_id IN "
            "(SELECT id FROM assets WHERE owner_id = ?) AND status IN ('pending', 'running')",
            (owner_id,),
        )
        conn.execute("DELETE FROM assets WHERE owner_id = ?", (owner_id,))
        conn.execute(
            "DELETE FROM rate_counters WHERE key IN (?, ?)",
            (f"auth-daily:{owner_id}", f"auth-hourly:{owner_id}"),
        )
        conn.execute("DELETE FROM owners WHERE id = ?", (owner_id,))
        conn.commit()

    if not storage.remove_tree(owner.storage_root, storage.USERS_DIR):
        logger.error("owner_storage_not_removed owner_id=%s", owner_id)
    logger.info("owner_deleted owner_id=%s handle=%s", owner_id, owner.handle)
    return owner


def update_watermark(owner_id: str, settings: Union[WatermarkSpec, Dict[str, object]]) -> Owner:
    owner = _require_owner(owner_id)
    if isinstance(settings, WatermarkSpec):
        spec = settings
    else:
        spec = validate_watermark_settings(settings, base=owner.watermark)
    with storage.get_db() as conn:
        conn.execute(
            "UPDATE owners SET watermark = ? WHERE id = ?",
            (json.dumps(spec.to_dict()), owner_id),
        )
        conn.commit()
    return get_owner(owner_id)


def can_use_subdomain(owner: Optional[Owner], config: Optional[Dict[str, object]] = None) -> bool:
    """Whether *owner* is currently allowed to be served from its own subdomain."""

    if owner is None or owner.suspended:
        return False
    config = config if config is not None else storage.get_config()
    if config.get("subdomain_mode", "enabled") == "enabled":
        return True
    with storage.get_db() as conn:
        row = conn.execute(
            "SELECT enabled FROM subdomain_overrides WHERE owner_id = ?", (owner.id,)
        ).fetchone()
    return bool(row and row["enabled"])


def set_subdomain_override(owner_id: str, enabled: bool) -> None:
    _require_owner(owner_id)
    with storage.get_db() as conn:
        conn.execute(
            """
            INSERT INTO subdomain_overrides (owner_id, enabled, updated_at)
            VALUES (?, ?, ?)
            ON CONFLICT (owner_id) DO UPDATE SET
                enabled = excluded.enabled,
                updated_at = excluded.updated_at
            """,
            (owner_id, 1 if enabled else 0, time.time()),
        )
        conn.commit()
    logger.info("subdomain_override_set owner_id=%s enabled=%s", owner_id, bool(enabled))


def list_subdomain_overrides() -> Dict[str, bool]:
    with storage.get_db() as conn:
        rows = conn.execute("SELECT owner_id, enabled FROM subdomain_overrides").fetchall()
    return {row["owner_id"]: bool(row["enabled"]) for row in rows}

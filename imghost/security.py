import hashlib
import logging
import os
import re
import secrets
from typing import Any, Dict, Optional

from itsdangerous import BadSignature, SignatureExpired, URLSafeSerializer, URLSafeTimedSerializer

from .storage import DATA_DIR, ensure_directories


ADMIN_TOKEN_MAX_AGE_SECONDS = 12 * 60 * 60
_CONTROL_CHAR_PATTERN = re.compile(r"[\x00-\x1f\x7f-\x9f\n\r]")

security_logger = logging.getLogger("imghost.security")


def _load_secret_key() -> str:
    env_secret = os.environ.get("SECRET_KEY")
    if env_secret:
        return env_secret

    secret_path = DATA_DIR / ".secret_key"
    try:
        ensure_directories()

        # O_EXCL so concurrent workers agree on a single key
        try:
            fd = os.open(
                secret_path,
                os.O_WRONLY | os.O_CREAT | os.O_EXCL,
                0o600
            )
            generated = secrets.token_hex(32)
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(generated)
                f.flush()
                os.fsync(f.fileno())
            logging.warning("Generated new secret key - stored in %s", secret_path)
            return generated
        except FileExistsError:
            existing = secret_path.read_text(encoding="utf-8").strip()
            if existing:
                return existing
            security_logger.warning(
                "Secret key file exists but is empty, regenerating"
            )
            generated = secrets.token_hex(32)
            fd = os.open(secret_path, os.O_WRONLY | os.O_TRUNC, 0o600)
            with os.fdopen(fd, 'w', encoding='utf-8') as f:
                f.write(generated)
                f.flush()
                os.fsync(f.fileno())
            return generated
    except OSError as error:
        security_logger.critical(
            "SECURITY WARNING: Using in-memory secret key. Tokens will not survive restarts. "
            "Set SECRET_KEY environment variable for production use. Error: %s",
            error,
        )
        return secrets.token_hex(32)


_SECRET_KEY_VALUE: Optional[str] = None
_token_serializer: Optional[URLSafeSerializer] = None
_admin_serializer: Optional[URLSafeTimedSerializer] = None


def get_secret_key_value() -> str:
    global _SECRET_KEY_VALUE
    if _SECRET_KEY_VALUE is None:
        _SECRET_KEY_VALUE = _load_secret_key()
    return _SECRET_KEY_VALUE


def _get_token_serializer() -> URLSafeSerializer:
    global _token_serializer
    if _token_serializer is None:
        _token_serializer = URLSafeSerializer(get_secret_key_value(), salt="api-token")
    return _token_serializer


def _get_admin_serializer() -> URLSafeTimedSerializer:
    global _admin_serializer
    if _admin_serializer is None:
        _admin_serializer = URLSafeTimedSerializer(
            get_secret_key_value(), salt="admin-token"
        )
    return _admin_serializer


def hash_token(token: str) -> str:
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def generate_token() -> str:
    return secrets.token_hex(16)


def encrypt_token(value: str) -> str:
    """Sign *value* so it can be stored and shown to its owner again later."""

    return _get_token_serializer().dumps(value)


def decrypt_token(token: Optional[str]) -> Optional[str]:
    if not token:
        return None
    try:
        return _get_token_serializer().loads(token)
    except (BadSignature, ValueError):
        return None


def issue_admin_token(subject: str = "admin") -> str:
    return _get_admin_serializer().dumps({"role": "admin", "sub": subject})


def verify_admin_token(
    token: Optional[str], max_age: int = ADMIN_TOKEN_MAX_AGE_SECONDS
) -> Optional[Dict[str, Any]]:
    """Return the admin claims carried by *token*, or ``None`` when invalid."""

    if not token:
        return None
    try:
        claims = _get_admin_serializer().loads(token, max_age=max_age)
    except SignatureExpired:
        security_logger.info("admin_token_expired")
        return None
    except (BadSignature, ValueError):
        return None
    if not isinstance(claims, dict) or claims.get("role") != "admin":
        return None
    return claims


def sanitize_log_value(value: Any) -> Any:
    """Remove control characters from log values to prevent log injection."""

    if isinstance(value, str):
        escaped = value.replace("\n", "\\n").replace("\r", "\\r")
        return _CONTROL_CHAR_PATTERN.sub(
            lambda match: f"\\x{ord(match.group()):02x}", escaped
        )
    return value

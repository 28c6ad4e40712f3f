"""Security utilities: provider credential encryption and JWT helpers."""

from datetime import datetime, timedelta, timezone
from enum import StrEnum

from cryptography.fernet import Fernet
from jose import jwt

from controlplane.core.config import get_settings

settings = get_settings()


class Role(StrEnum):
    SUPER_ADMIN = "super_admin"
    ADMIN = "admin"
    USER = "user"


# ── Field-level encryption (Fernet) ──────────────────────────

def _get_fernet() -> Fernet:
    if not settings.encryption_key:
        raise RuntimeError("ENCRYPTION_KEY is not configured")
    return Fernet(settings.encryption_key.encode())


def encrypt_value(plaintext: str) -> str:
    """Encrypt a string value. Returns base64 ciphertext."""
    return _get_fernet().encrypt(plaintext.encode()).decode()


def decrypt_value(ciphertext: str) -> str:
    """Decrypt a Fernet-encrypted value."""
    return _get_fernet().decrypt(ciphertext.encode()).decode()


# ── JWT ───────────────────────────────────────────────────────

def create_jwt(
    subject: str,
    tenant_id: str,
    role: str = Role.USER,
    expires_delta: timedelta | None = None,
) -> str:
    expire = datetime.now(timezone.utc) + (
        expires_delta or timedelta(minutes=settings.jwt_expire_minutes)
    )
    payload = {
        "sub": subject,
        "tid": tenant_id,
        "role": str(role),
        "exp": expire,
    }
    return jwt.encode(payload, settings.jwt_secret_key, algorithm=settings.jwt_algorithm)


def decode_jwt(token: str) -> dict:
    """Decode and verify a JWT. Raises jose.JWTError on failure."""
    return jwt.decode(token, settings.jwt_secret_key, algorithms=[settings.jwt_algorithm])

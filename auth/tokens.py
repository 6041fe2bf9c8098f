"""
auth/tokens.py -- JWT, password hashing, and signed-link utilities.

Security design decisions:
  Access tokens: python-jose with HS256. Tokens are signed with SECRET_KEY and
       carry principal_id, principal_type, role, and expiry. Verification
       returns None on any failure -- the route layer turns that into a 401.

  Passwords: bcrypt directly (no passlib wrapper). The _DUMMY_HASH constant
       enables timing equalization in authenticate_principal() so response
       time does not reveal whether an email exists.

  Verification links: a JWT with purpose "verify_email" bound to the principal,
       the email it was issued for, and the email_verified_at value at issue
       time. Any change to either value spends every outstanding link, so a
       forced re-verification invalidates the links sent before it.

  Password reset links: a JWT with purpose "password_reset" carrying an HMAC
       fingerprint of the current password hash. Completing the reset changes
       the hash, which invalidates every outstanding link -- single use without
       a token table.

  SECRET_KEY: sourced from core.config.get_settings().

Layer rule: no imports from api/, web/, ledger/, or security/. Import from
core/ is allowed -- core/ is the kernel and has no reverse dependencies.
"""

from __future__ import annotations

import hashlib
import hmac
import logging
from datetime import datetime, timedelta, timezone
from typing import TYPE_CHECKING

import bcrypt
from jose import JWTError, jwt

from core.clock import to_iso
from core.config import get_settings

if TYPE_CHECKING:
    from auth.models import Principal
    from auth.store import PrincipalStore

logger = logging.getLogger("credguard.auth")

_settings = get_settings()

_ALGORITHM = "HS256"
PURPOSE_ACCESS = "access"
PURPOSE_VERIFY_EMAIL = "verify_email"
PURPOSE_PASSWORD_RESET = "password_reset"

# ---------------------------------------------------------------------------
# Password hashing (bcrypt -- direct usage, no passlib wrapper)
# ---------------------------------------------------------------------------


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password."""
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash."""
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("credguard_timing_dummy")


# ---------------------------------------------------------------------------
# JWT encode / decode
# ---------------------------------------------------------------------------


def _encode(claims: dict, expire_seconds: int) -> str:
    expire = datetime.now(timezone.utc) + timedelta(seconds=expire_seconds)
    return jwt.encode({**claims, "exp": expire}, _settings.secret_key, algorithm=_ALGORITHM)


def _decode(token: str, purpose: str) -> dict | None:
    try:
        payload = jwt.decode(token, _settings.secret_key, algorithms=[_ALGORITHM])
    except JWTError:
        return None
    if payload.get("purpose") != purpose:
        return None
    if "principal_id" not in payload or "principal_type" not in payload:
        return None
    return payload


def create_access_token(principal: Principal, expire_seconds: int = 0) -> str:
    """Encode a signed access JWT for principal.

    expire_seconds: session duration. If 0 (default), uses
    Settings.token_expire_seconds.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    claims = {
        "sub": principal.email,
        "principal_id": principal.id,
        "principal_type": principal.principal_type,
        "role": principal.role,
        "purpose": PURPOSE_ACCESS,
    }
    return _encode(claims, duration)


def decode_access_token(token: str) -> dict | None:
    """Decode and verify an access JWT. Returns the payload dict or None on any failure."""
    return _decode(token, PURPOSE_ACCESS)


def _verification_state(principal: Principal) -> str:
    return to_iso(principal.email_verified_at) or ""


def create_verification_token(principal: Principal) -> str:
    """Signed email-verification link token, bound to the current email and verification state."""
    claims = {
        "sub": principal.email,
        "principal_id": principal.id,
        "principal_type": principal.principal_type,
        "purpose": PURPOSE_VERIFY_EMAIL,
        "va": _verification_state(principal),
    }
    return _encode(claims, _settings.verification_token_expire_seconds)


def decode_verification_token(token: str) -> dict | None:
    """Return the verification payload, or None if invalid, expired, or wrong purpose."""
    return _decode(token, PURPOSE_VERIFY_EMAIL)


def verification_token_matches(payload: dict, principal: Principal) -> bool:
    """True if a decoded verification payload was issued for principal's current state."""
    return (
        payload.get("principal_id") == principal.id
        and payload.get("sub") == principal.email
        and hmac.compare_digest(str(payload.get("va", "")), _verification_state(principal))
    )


def _password_fingerprint(hashed_password: str | None) -> str:
    return hmac.new(
        _settings.secret_key.encode(),
        (hashed_password or "").encode(),
        hashlib.sha256,
    ).hexdigest()[:16]


def create_password_reset_token(principal: Principal) -> str:
    """Signed password-reset token, invalidated as soon as the password hash changes."""
    claims = {
        "sub": principal.email,
        "principal_id": principal.id,
        "principal_type": principal.principal_type,
        "purpose": PURPOSE_PASSWORD_RESET,
        "fp": _password_fingerprint(principal.hashed_password),
    }
    return _encode(claims, _settings.password_reset_token_expire_seconds)


def decode_password_reset_token(token: str) -> dict | None:
    """Return the reset payload, or None if invalid, expired, or wrong purpose."""
    return _decode(token, PURPOSE_PASSWORD_RESET)


def reset_token_matches(payload: dict, principal: Principal) -> bool:
    """True if a decoded reset payload was issued for principal's current password hash."""
    expected = _password_fingerprint(principal.hashed_password)
    return (
        payload.get("principal_id") == principal.id
        and payload.get("sub") == principal.email
        and hmac.compare_digest(str(payload.get("fp", "")), expected)
    )


# ---------------------------------------------------------------------------
# Authentication (constant-time)
# ---------------------------------------------------------------------------


def authenticate_principal(store: PrincipalStore, email: str, password: str) -> Principal | None:
    """Authenticate an email/password login with timing equalization.

    Always runs bcrypt whether or not the principal exists, so an attacker
    cannot enumerate valid emails by measuring response time.

    Returns the Principal on success, None on any failure.
    """
    principal = store.get_by_email(email)
    if principal is None or principal.hashed_password is None:
        # Equalize timing -- do NOT return early before running bcrypt
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, principal.hashed_password):
        return None
    if not principal.is_active:
        return None
    return principal


# ---------------------------------------------------------------------------
# Cookie helper
# ---------------------------------------------------------------------------


def set_auth_cookie(response, token: str, expire_seconds: int = 0) -> None:
    """Write the JWT access token as an httpOnly cookie on the response.

    httponly=True: JS cannot read the cookie (XSS mitigation).
    samesite="lax": CSRF mitigation for cross-site POSTs.
    secure: only sent over HTTPS when SECURE_COOKIES=true (set in production).
    max_age: matches the JWT expiry so both expire together.
    """
    duration = expire_seconds if expire_seconds > 0 else _settings.token_expire_seconds
    response.set_cookie(
        "access_token",
        value=token,
        httponly=True,
        samesite="lax",
        secure=_settings.secure_cookies,
        max_age=duration,
    )

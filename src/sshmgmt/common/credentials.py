"""Derivation of OS account names, passwords and password hashes."""

from __future__ import annotations

import hashlib
import re
import secrets
from datetime import date, timedelta
from typing import Optional

import bcrypt

USERNAME_PREFIX = "sshmgmt"
GROUP_PREFIX = "grp"
PASSWORD_PREFIX = "SSHMGMTKIT_"
DEFAULT_VALIDITY_DAYS = 30
# bcrypt input limit
MAX_PASSWORD_BYTES = 72

_USERNAME_RE = re.compile(r"^[A-Za-z_][A-Za-z0-9_]{2,19}$")
_EXP_DATE_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")


def derive_username(max_logins: int, subject_id: int) -> str:
    """``sshmgmt<max_logins>x<subject_id>``, the id zero-padded to three digits."""
    return f"{USERNAME_PREFIX}{max_logins}x{subject_id:03d}"


def derive_group(max_logins: int) -> str:
    return f"{GROUP_PREFIX}{max_logins}"


def generate_password(prefix: str = PASSWORD_PREFIX) -> str:
    return f"{prefix}{secrets.randbelow(100000):05d}"


def recovery_password(username: str, salt: str, prefix: str = PASSWORD_PREFIX) -> str:
    """Reproducible password for ``username``; anyone holding ``salt`` can re-derive it."""
    digest = hashlib.sha256(salt.encode("utf-8") + username.encode("utf-8")).hexdigest()
    return f"{prefix}{digest[10:16]}"


def hash_password(password: str) -> str:
    """bcrypt hash of ``password``; raises ``ValueError`` past ``MAX_PASSWORD_BYTES``."""
    if len(password.encode("utf-8")) > MAX_PASSWORD_BYTES:
        raise ValueError(f"password is longer than {MAX_PASSWORD_BYTES} bytes")
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("ascii")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("ascii"))
    except ValueError:
        return False


def is_valid_username(username: str) -> bool:
    return bool(_USERNAME_RE.fullmatch(username))


def normalize_exp_date(value: str) -> str:
    """Return ``value`` as canonical ``YYYY-MM-DD`` or raise ``ValueError``."""
    if not _EXP_DATE_RE.fullmatch(value):
        raise ValueError(f"expiry date {value!r} is not in YYYY-MM-DD form")
    return date.fromisoformat(value).isoformat()


def exp_date_after(days: int, today: Optional[date] = None) -> str:
    start = today or date.today()
    return (start + timedelta(days=days)).isoformat()

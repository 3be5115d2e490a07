"""
Identity resolution: loosely-typed user reference -> canonical User.

A reference can be a numeric id, an email or a phone number in any
format. Lookup order when the type is unknown: numeric id, then email,
then normalized phone; first hit wins.
"""

import re
from typing import Optional, Union

from sqlalchemy import select, func

from savepad.core.database import Database, users
from savepad.core.errors import NotFoundError, ValidationError
from savepad.core.clock import ensure_utc
from savepad.models.user import User

COUNTRY_PREFIX = "55"
MIN_PHONE_DIGITS = 10

_NON_DIGITS = re.compile(r"[^0-9]")

UserRef = Union[int, str]

# Largest value a 64-bit INTEGER primary key can hold
MAX_DB_ID = 2 ** 63 - 1


def parse_id(value: object) -> Optional[int]:
    """ASCII digits within the storable integer range, else None."""
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        number = value
    else:
        text = "" if value is None else str(value).strip()
        if not (text.isascii() and text.isdigit()):
            return None
        number = int(text)
    return number if 0 < number <= MAX_DB_ID else None


def normalize_phone(raw: object) -> str:
    """Keep digits only and make sure the Brazilian country prefix is present.

    Idempotent: normalizing an already-normalized number returns it unchanged.
    """
    digits = _NON_DIGITS.sub("", "" if raw is None else str(raw))
    if not digits.startswith(COUNTRY_PREFIX):
        digits = COUNTRY_PREFIX + digits
    return digits


def is_valid_phone(normalized: str) -> bool:
    return normalized.isdigit() and len(normalized) >= MIN_PHONE_DIGITS


def require_phone(raw: object) -> str:
    """Normalize and validate, raising ValidationError on short numbers."""
    normalized = normalize_phone(raw)
    if not is_valid_phone(normalized):
        raise ValidationError(f"Invalid WhatsApp number: {raw}", code="invalid_phone")
    return normalized


def normalize_email(raw: Optional[str]) -> Optional[str]:
    if raw is None:
        return None
    email = raw.strip().lower()
    return email or None


def row_to_user(row) -> User:
    return User(
        id=row.id,
        name=row.name,
        email=row.email,
        phone=row.phone,
        status=row.status,
        password_hash=row.password_hash,
        verification_code=row.verification_code,
        created_at=ensure_utc(row.created_at),
        verified_at=ensure_utc(row.verified_at),
    )


class IdentityResolver:
    """Pure lookups over the users table; callers create-on-miss explicitly."""

    def __init__(self, db: Database):
        self.db = db

    def by_id(self, user_id: int, session=None) -> Optional[User]:
        user_id = parse_id(user_id)
        if user_id is None:
            return None
        with self.db.session_or(session) as s:
            row = s.execute(select(users).where(users.c.id == user_id)).first()
            return row_to_user(row) if row else None

    def by_email(self, email: str, session=None) -> Optional[User]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        with self.db.session_or(session) as s:
            row = s.execute(
                select(users).where(func.lower(users.c.email) == normalized)
            ).first()
            return row_to_user(row) if row else None

    def by_phone(self, phone: str, session=None) -> Optional[User]:
        normalized = normalize_phone(phone)
        if not is_valid_phone(normalized):
            return None
        with self.db.session_or(session) as s:
            row = s.execute(select(users).where(users.c.phone == normalized)).first()
            return row_to_user(row) if row else None

    def resolve(self, ref: Optional[UserRef], session=None) -> Optional[User]:
        """Map a raw reference to a User, or None when nothing matches."""
        if ref is None or isinstance(ref, bool):
            return None
        text = str(ref).strip()
        if not text:
            return None

        with self.db.session_or(session) as s:
            user_id = parse_id(text)
            if user_id is not None:
                user = self.by_id(user_id, session=s)
                if user:
                    return user
            if "@" in text:
                user = self.by_email(text, session=s)
                if user:
                    return user
            return self.by_phone(text, session=s)

    def require(self, ref: Optional[UserRef], session=None, *, label: str = "User") -> User:
        user = self.resolve(ref, session=session)
        if user is None:
            raise NotFoundError(f"{label} not found: {ref}", code="user_not_found")
        return user

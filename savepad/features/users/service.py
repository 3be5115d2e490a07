"""
User accounts and WhatsApp linking.
- register() / login()         bcrypt-hashed credentials
- issue_link_code()            6-digit code the user sends to the bot
- verify_link_code()           bot side: code + phone -> confirmed number
- link_status() / activate_by_phone()
"""

import secrets
from typing import Optional, Dict, Any

import bcrypt
from sqlalchemy import select, insert, update
from sqlalchemy.exc import IntegrityError

from savepad.core.clock import utc_now
from savepad.core.database import Database, users
from savepad.core.errors import ValidationError, AuthenticationError, ConflictError, NotFoundError
from savepad.core.logging import log_event
from savepad.features.family.service import FamilyService
from savepad.features.identity.service import (
    IdentityResolver,
    UserRef,
    normalize_email,
    require_phone,
    row_to_user,
)
from savepad.models.family import LinkResult
from savepad.models.user import User, UserStatus

MIN_PASSWORD_LENGTH = 6
MAX_PASSWORD_BYTES = 72  # bcrypt input limit
LINK_CODE_DIGITS = 6


def hash_password(password: str) -> str:
    """Hash a password with bcrypt."""
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt()).decode('utf-8')


def verify_password(password: str, password_hash: Optional[str]) -> bool:
    """Verify a password against a stored hash."""
    if not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode(), password_hash.encode())
    except ValueError:
        return False


def generate_link_code() -> str:
    return str(secrets.randbelow(10 ** LINK_CODE_DIGITS)).zfill(LINK_CODE_DIGITS)


def _check_password(password: Optional[str]) -> str:
    if not password or len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(
            f"Password must have at least {MIN_PASSWORD_LENGTH} characters", code="weak_password"
        )
    if len(password.encode()) > MAX_PASSWORD_BYTES:
        raise ValidationError("Password is too long", code="weak_password")
    return password


class UserService:
    def __init__(self, db: Database, identity: IdentityResolver, family: FamilyService):
        self.db = db
        self.identity = identity
        self.family = family

    def register(self, name: str, email: str, password: str, phone: Optional[str] = None) -> User:
        """
        Create an account, or claim the invite profile created for this email.

        Raises:
            ValidationError: missing name, bad email, weak password or bad phone
            ConflictError: email or phone already belongs to an account
        """
        display_name = (name or "").strip()
        if not display_name:
            raise ValidationError("Name is required", code="missing_name")
        email_key = normalize_email(email)
        if not email_key or "@" not in email_key:
            raise ValidationError(f"Invalid email: {email}", code="invalid_email")
        password_hash = hash_password(_check_password(password))
        normalized_phone = require_phone(phone) if phone else None

        try:
            with self.db.session() as s:
                existing = self.identity.by_email(email_key, session=s)
                if existing is not None and not existing.is_placeholder:
                    raise ConflictError("Email already registered", code="email_taken")

                values: Dict[str, Any] = {
                    "name": display_name,
                    "email": email_key,
                    "password_hash": password_hash,
                    "status": UserStatus.REGISTERED,
                }
                if normalized_phone:
                    holder = self.identity.by_phone(normalized_phone, session=s)
                    if holder is None or (existing is not None and holder.id == existing.id):
                        values["phone"] = normalized_phone
                    elif not holder.is_placeholder:
                        raise ConflictError("Phone already linked to another account", code="phone_in_use")
                    # A placeholder keeps the number until the user confirms it on WhatsApp

                if existing is not None:
                    s.execute(update(users).where(users.c.id == existing.id).values(**values))
                    user_id = existing.id
                else:
                    result = s.execute(insert(users).values(created_at=utc_now(), **values))
                    user_id = result.inserted_primary_key[0]
                row = s.execute(select(users).where(users.c.id == user_id)).first()
                user = row_to_user(row)
        except IntegrityError as exc:
            raise ConflictError("Email or phone already registered", code="email_taken") from exc

        log_event("info", "user.registered", user_id=user.id, extra={"claimed_invite": existing is not None})
        return user

    def login(self, email: str, password: str) -> User:
        user = self.identity.by_email(email or "")
        if user is None or not verify_password(password or "", user.password_hash):
            log_event("warning", "user.login_failed", error_code="invalid_credentials")
            raise AuthenticationError("Invalid email or password")
        return user

    def issue_link_code(self, user_ref: UserRef) -> str:
        """Store a fresh verification code for the user and return it."""
        user = self.identity.require(user_ref)
        code = generate_link_code()
        with self.db.session() as s:
            s.execute(update(users).where(users.c.id == user.id).values(verification_code=code))
        log_event("info", "user.link_code_issued", user_id=user.id)
        return code

    def verify_link_code(self, code: str, phone: str) -> LinkResult:
        """
        Redeem a verification code sent from the user's WhatsApp number.

        Raises:
            NotFoundError: unknown code
            ConflictError: the number belongs to another account
        """
        code = (code or "").strip()
        if not code:
            raise ValidationError("Verification code is required", code="missing_code")

        with self.db.session() as s:
            row = s.execute(select(users).where(users.c.verification_code == code)).first()
            if row is None:
                raise NotFoundError("Invalid verification code", code="invalid_code")
            s.execute(update(users).where(users.c.id == row.id).values(verification_code=None))
            return self.family.confirm_whatsapp(row.id, phone, session=s)

    def link_status(self, user_ref: UserRef) -> Dict[str, Any]:
        user = self.identity.require(user_ref)
        linked = bool(user.phone) and user.verified_at is not None
        return {
            "user_id": user.id,
            "linked": linked,
            "phone": user.phone if linked else None,
            "status": user.status,
            "verified_at": user.verified_at.isoformat() if user.verified_at else None,
        }

    def activate_by_phone(self, phone: str) -> User:
        """Legacy activation: mark the account holding this number as active."""
        normalized = require_phone(phone)
        with self.db.session() as s:
            user = self.identity.by_phone(normalized, session=s)
            if user is None:
                raise NotFoundError(f"No user with phone {normalized}", code="user_not_found")
            s.execute(
                update(users)
                .where(users.c.id == user.id)
                .values(status=UserStatus.ACTIVE, verified_at=user.verified_at or utc_now())
            )
            row = s.execute(select(users).where(users.c.id == user.id)).first()
            activated = row_to_user(row)
        log_event("info", "user.activated", user_id=activated.id)
        return activated

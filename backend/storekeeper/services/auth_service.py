# Overview: Service-layer operations for auth; encapsulates business logic and database work.

"""
Authentication Service

WHY: Every sale, movement and payment must be attributable to a user.
Uses bcrypt for password hashing and validates password strength.

SECURITY NOTES:
- Passwords hashed with bcrypt (cost factor from BCRYPT_ROUNDS, default 12)
- Minimum 8 characters, at least one letter and one digit
- Session tokens managed separately (see session_service.py)
- Sellers must be attached to an active store
"""

import re

import bcrypt
from flask import current_app

from ..errors import AccessDeniedError, ConflictError, NotFoundError, ServiceError
from ..extensions import db
from ..models import Store, User
from ..models.auth import ROLE_ADMIN, ROLE_SELLER, ROLES
from ..time_utils import utcnow
from ..validation import ValidationError


LANGUAGES = ("fr", "en", "rn", "sw")
PROFILE_FIELDS = {"name", "language"}


class PasswordValidationError(ServiceError):
    """Raised when password doesn't meet strength requirements."""
    code = "VALIDATION_ERROR"


def validate_password_strength(password: str) -> None:
    """
    Validate password meets strength requirements.

    Requirements:
    - Minimum 8 characters
    - At least one letter
    - At least one digit
    """
    if not isinstance(password, str) or len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")

    if not re.search(r"[A-Za-z]", password):
        raise PasswordValidationError("Password must contain at least one letter")

    if not re.search(r"\d", password):
        raise PasswordValidationError("Password must contain at least one digit")


def hash_password(password: str) -> str:
    """
    Hash password using bcrypt.

    Password is validated for strength before hashing.
    """
    validate_password_strength(password)
    rounds = current_app.config.get("BCRYPT_ROUNDS", 12)
    hashed = bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt(rounds=rounds))
    return hashed.decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    """
    Verify password against bcrypt hash.

    bcrypt.checkpw() is constant-time.
    """
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        # Malformed hash in the database
        return False


def _normalize_email(email) -> str:
    if not isinstance(email, str) or "@" not in email:
        raise ValidationError("A valid email is required")
    return email.strip().lower()


def _validate_role_and_store(role: str, store_id: int | None) -> None:
    if role not in ROLES:
        raise ValidationError(f"role must be one of: {', '.join(ROLES)}")
    if role == ROLE_SELLER:
        if store_id is None:
            raise ValidationError("Sellers must belong to a store")
        store = db.session.query(Store).filter_by(id=store_id).first()
        if not store:
            raise NotFoundError("Store not found")
        if not store.is_active:
            raise ConflictError("Store is not active")
    elif store_id is not None:
        if not db.session.query(Store.id).filter_by(id=store_id).first():
            raise NotFoundError("Store not found")


def create_user(
    email: str,
    name: str,
    password: str,
    role: str = ROLE_SELLER,
    store_id: int | None = None,
    language: str = "fr",
) -> User:
    """
    Create new user with bcrypt password hashing.

    Email is globally unique (case-insensitive). Sellers must reference an
    active store; admins may be attached to one or none.

    Raises:
        ValidationError: bad email/name/role
        PasswordValidationError: weak password
        ConflictError: email already registered
        NotFoundError: store does not exist
    """
    email = _normalize_email(email)
    if not isinstance(name, str) or not name.strip():
        raise ValidationError("name is required")
    _validate_role_and_store(role, store_id)

    if db.session.query(User.id).filter_by(email=email).first():
        raise ConflictError("Email already exists")

    user = User(
        email=email,
        name=name.strip(),
        password_hash=hash_password(password),
        role=role,
        store_id=store_id,
        language=language or "fr",
        is_active=True,
    )
    db.session.add(user)
    db.session.commit()
    return user


def update_user(user_id: int, patch: dict) -> User:
    """
    Update user profile fields (name, email, role, store_id, language, is_active).

    Password changes go through set_password / change_password.
    """
    user = db.session.query(User).filter_by(id=user_id).first()
    if not user:
        raise NotFoundError("User not found")

    if "email" in patch:
        email = _normalize_email(patch["email"])
        clash = db.session.query(User.id).filter(User.email == email, User.id != user.id).first()
        if clash:
            raise ConflictError("Email already exists")
        user.email = email
    if "name" in patch:
        name = patch["name"]
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("name cannot be empty")
        user.name = name.strip()
    if "language" in patch and patch["language"]:
        user.language = str(patch["language"])

    role = patch.get("role", user.role)
    store_id = patch["store_id"] if "store_id" in patch else user.store_id
    if "role" in patch or "store_id" in patch:
        _validate_role_and_store(role, store_id)
        user.role = role
        user.store_id = store_id

    if "is_active" in patch:
        user.is_active = bool(patch["is_active"])

    db.session.commit()
    return user


def get_user(user_id: int, *, acting_user: User) -> User:
    """Admins read any user; everyone else only themselves."""
    if not acting_user.is_admin and acting_user.id != user_id:
        raise AccessDeniedError("Cannot view another user")
    user = db.session.get(User, user_id)
    if not user:
        raise NotFoundError("User not found")
    return user


def update_profile(user_id: int, patch: dict) -> User:
    """Self-service edit of name and language; role and store stay admin-only."""
    unknown = sorted(set(patch) - PROFILE_FIELDS)
    if unknown:
        raise ValidationError(f"Field not allowed: {unknown[0]}")
    language = patch.get("language")
    if language is not None and language not in LANGUAGES:
        raise ValidationError(f"language must be one of: {', '.join(LANGUAGES)}")
    return update_user(user_id, patch)


def deactivate_user(user_id: int, acting_user_id: int | None = None) -> User:
    """Soft-delete a user and revoke their sessions."""
    from .session_service import revoke_all_user_sessions

    if acting_user_id is not None and acting_user_id == user_id:
        raise ConflictError("You cannot deactivate your own account")
    user = db.session.query(User).filter_by(id=user_id).first()
    if not user:
        raise NotFoundError("User not found")
    user.is_active = False
    db.session.commit()
    revoke_all_user_sessions(user.id, reason="User deactivated")
    return user


def set_password(user_id: int, new_password: str) -> User:
    """Admin password reset. Revokes every session of the user."""
    from .session_service import revoke_all_user_sessions

    user = db.session.query(User).filter_by(id=user_id).first()
    if not user:
        raise NotFoundError("User not found")
    user.password_hash = hash_password(new_password)
    db.session.commit()
    revoke_all_user_sessions(user.id, reason="Password reset")
    return user


def change_password(user_id: int, current_password: str, new_password: str) -> User:
    """Self-service password change; requires the current password."""
    user = db.session.query(User).filter_by(id=user_id).first()
    if not user:
        raise NotFoundError("User not found")
    if not verify_password(current_password or "", user.password_hash):
        raise AccessDeniedError("Current password is incorrect")
    user.password_hash = hash_password(new_password)
    db.session.commit()
    return user


def authenticate(email: str, password: str) -> User | None:
    """
    Authenticate user by email and password.

    Returns None when credentials are invalid, the user is inactive, or a
    seller's store has been deactivated. Updates last_login_at on success.
    """
    if not isinstance(email, str) or not email:
        return None
    user = db.session.query(User).filter_by(email=email.strip().lower()).first()
    if not user or not user.is_active:
        return None
    if not verify_password(password, user.password_hash):
        return None
    if user.role != ROLE_ADMIN:
        if not user.store or not user.store.is_active:
            return None

    user.last_login_at = utcnow()
    db.session.commit()
    return user

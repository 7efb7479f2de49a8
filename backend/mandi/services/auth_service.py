# Overview: Service-layer operations for auth; encapsulates business logic and database work.

"""
Authentication Service

WHY: Every write is attributed to an acting user. Passwords are hashed with
bcrypt; plaintext never touches the database.

SECURITY NOTES:
- bcrypt cost factor 12
- Minimum 8 characters with upper, lower and digit
- Customer-role users must be linked to an existing customer
- Session tokens are managed separately (see session_service.py)
"""

import re

import bcrypt

from ..extensions import db
from ..models import Customer, User
from ..models.auth import ROLES, ROLE_CUSTOMER


class PasswordValidationError(Exception):
    """Raised when password doesn't meet strength requirements."""
    pass


def validate_password_strength(password: str) -> None:
    if not isinstance(password, str) or len(password) < 8:
        raise PasswordValidationError("Password must be at least 8 characters long")
    if not re.search(r'[A-Z]', password):
        raise PasswordValidationError("Password must contain at least one uppercase letter")
    if not re.search(r'[a-z]', password):
        raise PasswordValidationError("Password must contain at least one lowercase letter")
    if not re.search(r'\d', password):
        raise PasswordValidationError("Password must contain at least one digit")


def hash_password(password: str, *, rounds: int = 12) -> str:
    """
    Hash password using bcrypt.

    Password is validated for strength before hashing.
    """
    validate_password_strength(password)
    salt = bcrypt.gensalt(rounds=rounds)
    return bcrypt.hashpw(password.encode('utf-8'), salt).decode('utf-8')


def verify_password(password: str, password_hash: str) -> bool:
    """Timing-safe bcrypt comparison. Malformed hashes never match."""
    if not password or not password_hash:
        return False
    try:
        return bcrypt.checkpw(password.encode('utf-8'), password_hash.encode('utf-8'))
    except ValueError:
        return False


def create_user(
    username: str,
    name: str,
    password: str,
    role: str,
    customer_id: int | None = None,
    *,
    rounds: int = 12,
) -> User:
    """
    Create a user.

    Raises PasswordValidationError for weak passwords and ValueError for a
    duplicate username, unknown role or a customer-role user without a
    valid customer.
    """
    if role not in ROLES:
        raise ValueError(f"Invalid role '{role}'. Must be one of: {', '.join(ROLES)}")

    if db.session.query(User).filter_by(username=username).first():
        raise ValueError(f"Username '{username}' already exists")

    if role == ROLE_CUSTOMER:
        if not customer_id or db.session.get(Customer, customer_id) is None:
            raise ValueError("Customer users must be linked to an existing customer")
    else:
        customer_id = None

    user = User(
        username=username,
        name=name,
        role=role,
        customer_id=customer_id,
        password_hash=hash_password(password, rounds=rounds),
        is_active=True,
    )
    db.session.add(user)
    db.session.commit()
    return user


def authenticate(username: str, password: str) -> User | None:
    """Return the active user matching the credentials, else None."""
    user = db.session.query(User).filter_by(username=username).first()
    if not user or not user.is_active:
        return None
    if not verify_password(password, user.password_hash):
        return None
    return user

"""
auth/passwords.py -- Password hashing and constant-time credential checks.

Passwords: bcrypt used directly (no passlib wrapper). Bcrypt is the right
choice for low-entropy, human-chosen secrets because its cost factor makes
offline guessing expensive. Refresh token-ids are NOT hashed here -- they are
high-entropy random values and use a fast SHA-256 in auth/ledger.py.

The _DUMMY_HASH constant enables timing equalization in authenticate_user()
so response time does not reveal whether an email is registered [C1].

Layer rule: no imports from api/.
"""

from __future__ import annotations

import bcrypt

from auth.models import User
from auth.store import CredentialStore


def hash_password(plain: str) -> str:
    """Return a bcrypt hash of the given plaintext password.

    Passwords longer than 72 bytes are truncated by bcrypt. The API layer caps
    password length at 255 characters; the CLI enforces the same cap.
    """
    return bcrypt.hashpw(plain.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(plain: str, hashed: str) -> bool:
    """Return True if the plaintext password matches the bcrypt hash.

    A malformed stored hash makes bcrypt raise ValueError; that is a failed
    verification, not a server error.
    """
    try:
        return bcrypt.checkpw(plain.encode("utf-8"), hashed.encode("utf-8"))
    except ValueError:
        return False


# Computed once at module load so the first login attempt is not measurably
# slower than subsequent ones.
_DUMMY_HASH: str = hash_password("rotaguard_timing_dummy")


def authenticate_user(store: CredentialStore, email: str, password: str) -> User | None:
    """Authenticate an email/password login with timing equalization [C1].

    Always runs bcrypt whether or not the user exists:
    - Unknown email: bcrypt runs against _DUMMY_HASH (same cost as real check)
    - Wrong password: bcrypt runs against the real hash (same cost)

    Returns the User on success, None on any failure (absent, wrong password,
    inactive). The caller cannot tell which -- that is intentional.
    """
    user = store.get_by_email(email)
    if user is None:
        verify_password(password, _DUMMY_HASH)
        return None
    if not verify_password(password, user.hashed_password):
        return None
    if not user.is_active:
        return None
    return user

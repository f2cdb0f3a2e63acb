"""
Shadow account provisioning.

A standalone quote can target a prospect who never registered. ensure_account
makes sure an account/profile/credential triple exists for the email, keyed
on the email so repeated calls never create duplicates.

The one-time password of a new account is returned once, in the
ProvisionedAccount, for the operator to relay. Only its bcrypt hash is
stored; it is never logged.
"""

import logging
import secrets
import sqlite3
import string
from dataclasses import dataclass, field
from typing import Optional

import bcrypt

from src.core import db

log = logging.getLogger("quotes.accounts")

PASSWORD_LENGTH = 12
BCRYPT_ROUNDS = 12
_ALPHABET = string.ascii_lowercase + string.digits


@dataclass(frozen=True)
class ProvisionedAccount:
    account_id: str
    created: bool
    one_time_password: Optional[str] = field(default=None, repr=False)


def generate_password(length: int = PASSWORD_LENGTH) -> str:
    return "".join(secrets.choice(_ALPHABET) for _ in range(length))


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"),
                         bcrypt.gensalt(rounds=BCRYPT_ROUNDS)).decode("utf-8")


def verify_password(password: str, password_hash: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode("utf-8"), password_hash.encode("utf-8"))
    except ValueError:
        return False


def _reuse(user: dict, display_name: str, company: str) -> ProvisionedAccount:
    if not db.get_profile(user["id"]):
        try:
            db.insert_profile(user["id"], display_name, company or None, role="prospect")
            log.info("Backfilled missing profile for account %s", user["id"])
        except sqlite3.IntegrityError:
            pass  # another request backfilled it first
    return ProvisionedAccount(account_id=user["id"], created=False)


def ensure_account(email: str, display_name: str, company: str = None) -> ProvisionedAccount:
    """Return the account for email, creating a shadow account if needed."""
    email = (email or "").strip().lower()
    existing = db.get_user_by_email(email)
    if existing:
        return _reuse(existing, display_name, company)

    user_id = db.new_id()
    password = generate_password()
    try:
        db.insert_account(user_id, email, display_name, company or None,
                          hash_password(password))
    except sqlite3.IntegrityError:
        # Lost a race against a concurrent provisioning of the same email.
        winner = db.get_user_by_email(email)
        if not winner:
            raise
        return _reuse(winner, display_name, company)

    log.info("Shadow account created for project owner %s", user_id)
    return ProvisionedAccount(account_id=user_id, created=True, one_time_password=password)

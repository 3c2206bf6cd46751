"""Pluggable credential verification.

The core never derives identity on its own: a session layer authenticates a
user once and hands a :class:`~pharmadesk.scope.Caller` to every call. The
default :class:`PlaintextAuthenticator` compares the secrets stored on user
records and is meant to be swapped for a hardened implementation.
"""

from __future__ import annotations

import hmac
from typing import Optional, Protocol

from . import data_manager, log
from .constants import CollectionName, UserRole


class Authenticator(Protocol):
    def authenticate(
        self,
        email: str,
        secret: str,
        role: UserRole,
        branch_id: Optional[str] = None,
    ) -> Optional[data_manager.UserRow]:
        ...


def _secrets_match(stored: Optional[str], supplied: str) -> bool:
    if not stored:
        return False
    return hmac.compare_digest(stored.encode("utf-8"), supplied.encode("utf-8"))


class PlaintextAuthenticator:
    """Match users by email, role and the secret stored on their record.

    Managers sign in with the access code issued by an owner; owners and
    pharmacists use their password. When ``branch_id`` is given, a pharmacist
    is only accepted at their own branch.
    """

    def __init__(self, store: data_manager.EntityStore):
        self.store = store

    def authenticate(
        self,
        email: str,
        secret: str,
        role: UserRole,
        branch_id: Optional[str] = None,
    ) -> Optional[data_manager.UserRow]:
        wanted = email.strip().lower()
        for user in self.store.get(CollectionName.USERS):
            if user.role is not role or user.email.strip().lower() != wanted:
                continue
            stored = user.access_code if role is UserRole.MANAGER else user.credential_secret
            if not _secrets_match(stored, secret):
                break
            if role is UserRole.PHARMACIST and branch_id is not None and user.branch_id != branch_id:
                log.warning("Pharmacist '%s' attempted to sign in at branch '%s'", user.user_id, branch_id)
                return None
            log.info("Authenticated %s '%s'", role.value, user.user_id)
            return user

        log.warning("Failed %s sign-in for '%s'", role.value, wanted)
        return None

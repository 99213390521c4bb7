"""
Multi-Tenant Service: Store Scoping Helpers

WHY: Centralize the one authorization rule every ledger reuses:
admins bypass store scoping, sellers are confined to their own store.

SECURITY INVARIANTS:
1. Every authenticated request carries an AccessContext (g.access, set by require_auth)
2. Store IDs from client input are checked with require_store_access
3. Records loaded by id are checked with require_record_access before use
4. Cross-store attempts are logged and reported as AccessDeniedError

USAGE:
    from storekeeper.services.tenant_service import require_store_access

    require_store_access(g.access, store_id)
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from ..errors import AccessDeniedError, NotFoundError
from ..extensions import db
from ..models import Store
from ..models.auth import ROLE_ADMIN

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AccessContext:
    """
    Authenticated caller identity as handed over by the credential service.

    store_id is captured at login; it may be None for admins.
    """
    user_id: int
    role: str
    store_id: int | None = None

    @property
    def is_admin(self) -> bool:
        return self.role == ROLE_ADMIN


def can_access_store(access: AccessContext, store_id: int | None) -> bool:
    if access.is_admin:
        return True
    return store_id is not None and access.store_id == store_id


def require_store_access(access: AccessContext, store_id: int | None) -> None:
    """
    Core store isolation check. Call before any operation that uses a
    store_id from client input.
    """
    if can_access_store(access, store_id):
        return
    logger.warning(
        "Cross-store access denied: user=%s store=%s requested=%s",
        access.user_id, access.store_id, store_id,
    )
    raise AccessDeniedError("Unauthorized store access")


def require_record_access(access: AccessContext, record, label: str):
    """
    Validate a record loaded by id: missing -> NotFoundError,
    foreign store -> AccessDeniedError. Returns the record.
    """
    if record is None:
        raise NotFoundError(f"{label} not found")
    require_store_access(access, record.store_id)
    return record


def resolve_store_id(access: AccessContext, requested_store_id: int | None) -> int:
    """
    Store a request acts on. Sellers default to their own store; admins
    must name one explicitly.
    """
    store_id = requested_store_id if requested_store_id is not None else access.store_id
    if store_id is None:
        raise AccessDeniedError("A store must be specified")
    require_store_access(access, store_id)
    return store_id


def require_active_store(store_id: int) -> Store:
    store = db.session.query(Store).filter_by(id=store_id).first()
    if not store:
        raise NotFoundError("Store not found")
    if not store.is_active:
        raise AccessDeniedError("Store is not active")
    return store

"""Shared business-layer plumbing for pharmadesk.

This module holds the pieces every domain module needs: the runtime context
that carries settings and the injected entity store, the error taxonomy,
record lookups, identifier generation and the small validation guards. The
domain rules themselves live in :mod:`scope`, :mod:`finance`, :mod:`pos`,
:mod:`directory` and :mod:`insights`.
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import TYPE_CHECKING, Iterable, Optional

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, CollectionName, UserRole

if TYPE_CHECKING:  # pragma: no cover
    from .finance import RevenueLedger
    from .scope import Caller


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced branch, user, product, or transaction is unknown."""


class DuplicateEmailError(BusinessRuleViolation):
    """Raised when a new account reuses an email address already on file."""


class PermissionDeniedError(BusinessRuleViolation):
    """Raised when a caller's role does not allow the requested operation."""


class CheckoutError(BusinessRuleViolation):
    """Base class for checkout validation failures; nothing was written."""


class EmptyCartError(CheckoutError):
    """Raised when a checkout is attempted with no lines in the cart."""


class InsufficientStockError(CheckoutError):
    """Raised when a line asks for more units than the product has on hand."""

    def __init__(self, product_id: str, requested: int, available: int):
        self.product_id = product_id
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient stock for product '{product_id}': "
            f"requested {requested}, available {available}"
        )


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, the entity store and the optional ledger."""

    settings: data_manager.ConfigSettings
    store: data_manager.EntityStore
    ledger: Optional["RevenueLedger"] = None


def resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a workbook-backed store.

    The store is bound to the configured data file, so every write through it
    is saved immediately.

    Args:
        config_path (Path | None): Optional override path for the
            configuration file. When omitted the data layer searches upward
            from the current working directory.

    Returns:
        RuntimeContext: Context ready for the domain modules.

    Raises:
        FileNotFoundError: If the configuration file or workbook is missing.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    store = data_manager.WorkbookStore(workbook, data_file=settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, store=store)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate data compatibility before mutating state.

    Both the version declared in ``config.ini`` and, for workbook stores, the
    version recorded on the workbook's ``Meta`` sheet must equal
    ``EXPECTED_SCHEMA_VERSION``.

    Raises:
        RuntimeError: On any mismatch.
    """
    declared = [context.settings.schema_version]
    if isinstance(context.store, data_manager.WorkbookStore):
        recorded = data_manager.read_schema_version(context.store.workbook)
        if recorded is not None:
            declared.append(recorded)

    for version in declared:
        if version != EXPECTED_SCHEMA_VERSION:
            log.error(
                "Schema mismatch: expected %s, found %s",
                EXPECTED_SCHEMA_VERSION,
                version,
            )
            raise RuntimeError(
                "Schema mismatch: expected %s, found %s"
                % (EXPECTED_SCHEMA_VERSION, version)
            )

    log.debug("Schema version '%s' validated", EXPECTED_SCHEMA_VERSION)


def persist_context(context: RuntimeContext) -> None:
    """Save a workbook-backed store to the configured data file.

    Memory stores have nothing to persist and are left alone.
    """
    store = context.store
    if not isinstance(store, data_manager.WorkbookStore):
        log.debug("Store %s has no backing file; nothing to persist", type(store).__name__)
        return
    with store.lock:
        data_manager.save_workbook(store.workbook, destination=context.settings.data_file)
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook from disk into a fresh context.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.open_workbook(context.settings.data_file)
    store = data_manager.WorkbookStore(workbook, data_file=context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, store=store)


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------


def _find(records: Iterable, attribute: str, key: str):
    for record in records:
        if getattr(record, attribute) == key:
            return record
    return None


def get_branch(context: RuntimeContext, branch_id: str) -> data_manager.BranchRow:
    """Resolve a branch by id or raise :class:`MissingReferenceError`."""
    branch = _find(context.store.get(CollectionName.BRANCHES), "branch_id", branch_id)
    if branch is None:
        log.warning("Branch lookup failed for id '%s'", branch_id)
        raise MissingReferenceError(f"Unknown branch id: {branch_id}")
    return branch


def get_user(context: RuntimeContext, user_id: str) -> data_manager.UserRow:
    """Resolve a user by id or raise :class:`MissingReferenceError`."""
    user = _find(context.store.get(CollectionName.USERS), "user_id", user_id)
    if user is None:
        log.warning("User lookup failed for id '%s'", user_id)
        raise MissingReferenceError(f"Unknown user id: {user_id}")
    return user


def get_product(context: RuntimeContext, product_id: str) -> data_manager.ProductRow:
    """Resolve a product by id or raise :class:`MissingReferenceError`."""
    product = _find(context.store.get(CollectionName.PRODUCTS), "product_id", product_id)
    if product is None:
        log.warning("Product lookup failed for id '%s'", product_id)
        raise MissingReferenceError(f"Unknown product id: {product_id}")
    return product


def get_transaction(context: RuntimeContext, transaction_id: str) -> data_manager.TransactionRow:
    """Resolve a transaction by id or raise :class:`MissingReferenceError`."""
    transaction = _find(context.store.get(CollectionName.TRANSACTIONS), "transaction_id", transaction_id)
    if transaction is None:
        log.warning("Transaction lookup failed for id '%s'", transaction_id)
        raise MissingReferenceError(f"Unknown transaction id: {transaction_id}")
    return transaction


def require_role(caller: "Caller", *roles: UserRole) -> None:
    """Raise :class:`PermissionDeniedError` unless ``caller.role`` is in ``roles``."""
    if caller.role not in roles:
        log.warning(
            "Caller '%s' with role %s attempted an operation reserved for %s",
            caller.user_id,
            caller.role.value,
            ", ".join(role.value for role in roles),
        )
        raise PermissionDeniedError(
            f"Operation requires role {' or '.join(role.value for role in roles)}"
        )


# ---------------------------------------------------------------------------
# Identifiers and validation guards
# ---------------------------------------------------------------------------


def generate_id(prefix: str, *, when: Optional[datetime] = None) -> str:
    """Generate a sortable, collision-resistant identifier.

    Args:
        prefix (str): Entity designator, e.g. ``"TX"`` for transactions or
            ``"b"`` for branches.
        when (datetime | None): Timestamp used for the sortable part. Defaults
            to the current UTC time.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}-{4 hex}``.

    Microsecond precision keeps identifiers in chronological order; the random
    suffix separates identifiers minted within the same microsecond.
    """
    when = when or resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}-{uuid.uuid4().hex[:4]}"


def require_positive_quantity(quantity: int) -> None:
    """Validate that a quantity is a strictly positive whole number.

    Raises:
        ValueError: If ``quantity`` is not an integer or not above zero.
    """
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be a whole number greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")

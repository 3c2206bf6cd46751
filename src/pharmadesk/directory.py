"""Branch lifecycle, manager assignment and account directory operations.

Each mutation holds the store lock for its whole read-modify-write cycle and
writes the affected collection back in one ``put``. Operations referencing an
unknown branch or user raise :class:`~pharmadesk.core_logic.MissingReferenceError`.
"""

from __future__ import annotations

import secrets
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Iterable, List, Optional

from . import core_logic, data_manager, log
from .constants import (
    ACCESS_CODE_MAX,
    ACCESS_CODE_MIN,
    MIN_SECRET_LENGTH,
    SIGNUP_TRIAL_DAYS,
    CollectionName,
    SubscriptionStatus,
    UserRole,
)
from .core_logic import BusinessRuleViolation, DuplicateEmailError, MissingReferenceError

BRANCH_PREFIX = "b"
USER_PREFIX = "u"
PRODUCT_PREFIX = "p"


@dataclass(frozen=True)
class RegistrationCommand:
    """User intent for a self-service sign-up."""

    name: str
    email: str
    secret: str
    role: UserRole
    branch_id: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class ProductCommand:
    """User intent for adding a product to a branch's inventory."""

    name: str
    sku: str
    category: str
    price: Decimal
    cost: Decimal
    stock: int
    min_stock_level: int
    expiry_date: date
    branch_id: str


# ---------------------------------------------------------------------------
# Branches
# ---------------------------------------------------------------------------


def create_branch(context: core_logic.RuntimeContext, name: str, location: str) -> data_manager.BranchRow:
    """Create and persist a new branch."""
    name = name.strip()
    if not name:
        raise BusinessRuleViolation("Branch name is required")

    store = context.store
    with store.lock:
        branch = data_manager.BranchRow(
            branch_id=core_logic.generate_id(BRANCH_PREFIX),
            name=name,
            location=location.strip(),
        )
        branches = store.get(CollectionName.BRANCHES)
        branches.append(branch)
        store.put(CollectionName.BRANCHES, branches)

    log.info("Created branch '%s' (%s)", branch.branch_id, branch.name)
    return branch


def delete_branch(context: core_logic.RuntimeContext, branch_id: str) -> data_manager.BranchRow:
    """Delete a branch and strip it from every manager's assignments.

    Products and transactions that reference the branch are kept as they
    are; scoped reads simply stop returning them to managers.

    Raises:
        MissingReferenceError: If ``branch_id`` is unknown.
    """
    store = context.store
    with store.lock:
        branch = core_logic.get_branch(context, branch_id)
        remaining = [b for b in store.get(CollectionName.BRANCHES) if b.branch_id != branch_id]
        store.put(CollectionName.BRANCHES, remaining)

        stripped = 0
        users = []
        for user in store.get(CollectionName.USERS):
            if user.role is UserRole.MANAGER and branch_id in user.assigned_branch_ids:
                user = replace(
                    user,
                    assigned_branch_ids=tuple(b for b in user.assigned_branch_ids if b != branch_id),
                )
                stripped += 1
            users.append(user)
        if stripped:
            store.put(CollectionName.USERS, users)

    log.info("Deleted branch '%s'; removed it from %d manager assignment(s)", branch_id, stripped)
    return branch


# ---------------------------------------------------------------------------
# Manager assignment
# ---------------------------------------------------------------------------


def _get_manager(context: core_logic.RuntimeContext, manager_id: str) -> data_manager.UserRow:
    user = core_logic.get_user(context, manager_id)
    if user.role is not UserRole.MANAGER:
        log.warning("User '%s' is not a manager (role=%s)", manager_id, user.role.value)
        raise MissingReferenceError(f"Unknown manager id: {manager_id}")
    return user


def _replace_user(store: data_manager.EntityStore, updated: data_manager.UserRow) -> None:
    users = [updated if user.user_id == updated.user_id else user for user in store.get(CollectionName.USERS)]
    store.put(CollectionName.USERS, users)


def assign_manager(context: core_logic.RuntimeContext, manager_id: str, branch_id: str) -> data_manager.UserRow:
    """Grant a manager access to a branch. Assigning twice is a no-op.

    Raises:
        MissingReferenceError: If the manager or the branch is unknown, or
            the user is not a manager.
    """
    store = context.store
    with store.lock:
        manager = _get_manager(context, manager_id)
        core_logic.get_branch(context, branch_id)
        if branch_id in manager.assigned_branch_ids:
            log.debug("Manager '%s' already assigned to branch '%s'", manager_id, branch_id)
            return manager
        manager = replace(manager, assigned_branch_ids=manager.assigned_branch_ids + (branch_id,))
        _replace_user(store, manager)

    log.info("Assigned manager '%s' to branch '%s'", manager_id, branch_id)
    return manager


def unassign_manager(context: core_logic.RuntimeContext, manager_id: str, branch_id: str) -> data_manager.UserRow:
    """Revoke a manager's access to a branch.

    The branch itself need not exist any more; removing a branch the manager
    does not hold is a no-op.

    Raises:
        MissingReferenceError: If the manager is unknown or not a manager.
    """
    store = context.store
    with store.lock:
        manager = _get_manager(context, manager_id)
        if branch_id not in manager.assigned_branch_ids:
            log.debug("Manager '%s' holds no assignment for branch '%s'", manager_id, branch_id)
            return manager
        manager = replace(
            manager,
            assigned_branch_ids=tuple(b for b in manager.assigned_branch_ids if b != branch_id),
        )
        _replace_user(store, manager)

    log.info("Unassigned manager '%s' from branch '%s'", manager_id, branch_id)
    return manager


def list_managers(context: core_logic.RuntimeContext) -> List[data_manager.UserRow]:
    return [user for user in context.store.get(CollectionName.USERS) if user.role is UserRole.MANAGER]


# ---------------------------------------------------------------------------
# Access codes and accounts
# ---------------------------------------------------------------------------


def generate_access_code(existing: Iterable[str] = ()) -> str:
    """Return a random four-digit code not present in ``existing``.

    Raises:
        BusinessRuleViolation: If every four-digit code is already taken.
    """
    taken = {str(code) for code in existing if code}
    if len(taken) > ACCESS_CODE_MAX - ACCESS_CODE_MIN:
        raise BusinessRuleViolation("No unused access codes remain")
    while True:
        code = str(ACCESS_CODE_MIN + secrets.randbelow(ACCESS_CODE_MAX - ACCESS_CODE_MIN + 1))
        if code not in taken:
            return code


def _codes_in_use(users: Iterable[data_manager.UserRow]) -> List[str]:
    return [user.access_code for user in users if user.access_code]


def issue_access_code(context: core_logic.RuntimeContext, manager_id: str) -> data_manager.UserRow:
    """Replace a manager's access code with a fresh, unused one."""
    store = context.store
    with store.lock:
        manager = _get_manager(context, manager_id)
        code = generate_access_code(_codes_in_use(store.get(CollectionName.USERS)))
        manager = replace(manager, access_code=code)
        _replace_user(store, manager)

    log.info("Issued a new access code for manager '%s'", manager_id)
    return manager


def _normalize_email(email: str) -> str:
    return email.strip().lower()


def _ensure_email_free(users: Iterable[data_manager.UserRow], email: str) -> None:
    if any(_normalize_email(user.email) == email for user in users):
        log.warning("Rejected account creation for already registered email '%s'", email)
        raise DuplicateEmailError(f"Email '{email}' is already registered")


def register_user(context: core_logic.RuntimeContext, command: RegistrationCommand) -> data_manager.UserRow:
    """Create an owner or pharmacist account from a sign-up request.

    Managers cannot sign up; they are created by an owner through
    :func:`create_manager`. New accounts start active with a trial period of
    ``SIGNUP_TRIAL_DAYS`` days.

    Raises:
        BusinessRuleViolation: For a manager sign-up or a pharmacist without
            a branch.
        MissingReferenceError: If the pharmacist's branch is unknown.
        DuplicateEmailError: If the email is already registered.
        ValueError: If a field is missing or the secret is too short.
    """
    if command.role is UserRole.MANAGER:
        raise BusinessRuleViolation("Managers cannot self-register; ask an owner for an access code")

    name = command.name.strip()
    email = _normalize_email(command.email)
    if not name or not email or not command.secret:
        raise ValueError("Name, email and password are required")
    if len(command.secret) < MIN_SECRET_LENGTH:
        raise ValueError(f"Password must be at least {MIN_SECRET_LENGTH} characters")

    branch_id = None
    if command.role is UserRole.PHARMACIST:
        if not command.branch_id:
            raise BusinessRuleViolation("Pharmacists must select a branch")
        branch_id = command.branch_id

    timestamp = core_logic.resolve_timestamp(command.timestamp)
    store = context.store
    with store.lock:
        if branch_id is not None:
            core_logic.get_branch(context, branch_id)
        users = store.get(CollectionName.USERS)
        _ensure_email_free(users, email)
        user = data_manager.UserRow(
            user_id=core_logic.generate_id(USER_PREFIX, when=timestamp),
            name=name,
            email=email,
            role=command.role,
            branch_id=branch_id,
            credential_secret=command.secret,
            subscription_status=SubscriptionStatus.ACTIVE,
            trial_ends_at=(timestamp + timedelta(days=SIGNUP_TRIAL_DAYS)).isoformat(),
        )
        users.append(user)
        store.put(CollectionName.USERS, users)

    log.info("Registered %s account '%s'", user.role.value, user.user_id)
    return user


def create_manager(
    context: core_logic.RuntimeContext,
    name: str,
    email: str,
    *,
    branch_ids: Iterable[str] = (),
) -> data_manager.UserRow:
    """Create a manager account holding a fresh access code.

    Raises:
        DuplicateEmailError: If the email is already registered.
        MissingReferenceError: If any of ``branch_ids`` is unknown.
        ValueError: If the name or email is blank.
    """
    name = name.strip()
    email = _normalize_email(email)
    if not name or not email:
        raise ValueError("Name and email are required")

    store = context.store
    with store.lock:
        assigned = []
        for branch_id in branch_ids:
            core_logic.get_branch(context, branch_id)
            if branch_id not in assigned:
                assigned.append(branch_id)
        users = store.get(CollectionName.USERS)
        _ensure_email_free(users, email)
        timestamp = core_logic.resolve_timestamp(None)
        manager = data_manager.UserRow(
            user_id=core_logic.generate_id(USER_PREFIX, when=timestamp),
            name=name,
            email=email,
            role=UserRole.MANAGER,
            assigned_branch_ids=tuple(assigned),
            access_code=generate_access_code(_codes_in_use(users)),
            subscription_status=SubscriptionStatus.ACTIVE,
            trial_ends_at=timestamp.isoformat(),
        )
        users.append(manager)
        store.put(CollectionName.USERS, users)

    log.info("Created manager '%s' with %d branch assignment(s)", manager.user_id, len(assigned))
    return manager


def delete_user(context: core_logic.RuntimeContext, user_id: str) -> data_manager.UserRow:
    """Remove a user account.

    Raises:
        MissingReferenceError: If ``user_id`` is unknown.
    """
    store = context.store
    with store.lock:
        user = core_logic.get_user(context, user_id)
        store.put(
            CollectionName.USERS,
            [existing for existing in store.get(CollectionName.USERS) if existing.user_id != user_id],
        )

    log.info("Deleted %s account '%s'", user.role.value, user_id)
    return user


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------


def _require_nonnegative_count(value: int, label: str) -> None:
    if isinstance(value, bool) or not isinstance(value, int) or value < 0:
        log.error("%s validation failed: %s", label, value)
        raise ValueError(f"{label} must be a whole number of zero or more")


def add_product(context: core_logic.RuntimeContext, command: ProductCommand) -> data_manager.ProductRow:
    """Validate and add a product to a branch's inventory.

    Raises:
        MissingReferenceError: If the branch is unknown.
        BusinessRuleViolation: If the SKU is already used at that branch.
        ValueError: If a field is blank or a number is negative.
    """
    name = command.name.strip()
    sku = command.sku.strip()
    if not name or not sku:
        raise ValueError("Product name and SKU are required")
    core_logic.require_nonnegative_money(command.price)
    core_logic.require_nonnegative_money(command.cost)
    _require_nonnegative_count(command.stock, "Stock")
    _require_nonnegative_count(command.min_stock_level, "Minimum stock level")

    store = context.store
    with store.lock:
        core_logic.get_branch(context, command.branch_id)
        products = store.get(CollectionName.PRODUCTS)
        if any(p.branch_id == command.branch_id and p.sku.lower() == sku.lower() for p in products):
            log.warning("Rejected duplicate SKU '%s' at branch '%s'", sku, command.branch_id)
            raise BusinessRuleViolation(f"SKU '{sku}' already exists at branch '{command.branch_id}'")
        product = data_manager.ProductRow(
            product_id=core_logic.generate_id(PRODUCT_PREFIX),
            name=name,
            sku=sku,
            category=command.category.strip(),
            price=command.price,
            cost=command.cost,
            stock=command.stock,
            min_stock_level=command.min_stock_level,
            expiry_date=command.expiry_date,
            branch_id=command.branch_id,
        )
        products.append(product)
        store.put(CollectionName.PRODUCTS, products)

    log.info(
        "Added product '%s' (%s) to branch '%s' with stock %d",
        product.product_id,
        product.sku,
        product.branch_id,
        product.stock,
    )
    return product

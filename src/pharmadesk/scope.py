"""Role-based scoping of branches, products and transactions.

Every read that reaches a dashboard, report or export goes through
:func:`in_scope`. Records outside the caller's branches are filtered out
silently: an empty result is indistinguishable from a denial, so the
existence of other branches' records never leaks.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import FrozenSet, Iterable, List, Optional, Protocol, Sequence, Tuple, TypeVar

from . import data_manager
from .constants import CollectionName, UserRole

ALL_BRANCHES = "ALL"

T = TypeVar("T")


class BranchOwned(Protocol):
    branch_id: str


@dataclass(frozen=True)
class Caller:
    """Identity supplied by the session collaborator to every core call."""

    user_id: str
    role: UserRole
    branch_id: Optional[str] = None
    assigned_branch_ids: Tuple[str, ...] = ()

    @classmethod
    def from_user(cls, user: data_manager.UserRow) -> "Caller":
        return cls(
            user_id=user.user_id,
            role=user.role,
            branch_id=user.branch_id,
            assigned_branch_ids=tuple(user.assigned_branch_ids),
        )


class ScopePolicy:
    """Decide whether a record owned by ``branch_id`` is visible."""

    def allows(self, branch_id: str) -> bool:
        raise NotImplementedError


class OwnerScope(ScopePolicy):
    def allows(self, branch_id: str) -> bool:
        return True


@dataclass(frozen=True)
class ManagerScope(ScopePolicy):
    branch_ids: FrozenSet[str]

    def allows(self, branch_id: str) -> bool:
        return branch_id in self.branch_ids


@dataclass(frozen=True)
class PharmacistScope(ScopePolicy):
    branch_id: Optional[str]

    def allows(self, branch_id: str) -> bool:
        # A pharmacist without a branch sees nothing.
        return self.branch_id is not None and branch_id == self.branch_id


def policy_for(caller: Caller) -> ScopePolicy:
    if caller.role is UserRole.OWNER:
        return OwnerScope()
    if caller.role is UserRole.MANAGER:
        return ManagerScope(frozenset(caller.assigned_branch_ids))
    return PharmacistScope(caller.branch_id)


def in_scope(caller: Caller, record: BranchOwned) -> bool:
    """Return ``True`` when ``record`` belongs to a branch the caller may see."""
    return policy_for(caller).allows(record.branch_id)


def filter_scope(caller: Caller, records: Iterable[T]) -> List[T]:
    policy = policy_for(caller)
    return [record for record in records if policy.allows(record.branch_id)]


def scope_branches(store: data_manager.EntityStore, caller: Caller) -> List[data_manager.BranchRow]:
    return filter_scope(caller, store.get(CollectionName.BRANCHES))


def scope_products(store: data_manager.EntityStore, caller: Caller) -> List[data_manager.ProductRow]:
    return filter_scope(caller, store.get(CollectionName.PRODUCTS))


def scope_transactions(store: data_manager.EntityStore, caller: Caller) -> List[data_manager.TransactionRow]:
    return filter_scope(caller, store.get(CollectionName.TRANSACTIONS))


def narrow_to_branch(records: Sequence[T], branch_id: Optional[str]) -> List[T]:
    """Apply a "selected branch" filter on top of an already scoped list.

    ``None`` or ``"ALL"`` keep every record. Narrowing never widens a scope
    because it only ever removes records.
    """
    if branch_id is None or branch_id == ALL_BRANCHES:
        return list(records)
    return [record for record in records if record.branch_id == branch_id]


def search_products(products: Iterable[data_manager.ProductRow], term: str) -> List[data_manager.ProductRow]:
    """Case-insensitive substring search on product name or SKU."""
    needle = term.strip().lower()
    if not needle:
        return list(products)
    return [
        product
        for product in products
        if needle in product.name.lower() or needle in product.sku.lower()
    ]

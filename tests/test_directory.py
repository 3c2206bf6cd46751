"""Tests for branch lifecycle, manager assignment and account management."""

from __future__ import annotations

from datetime import date, timedelta
from decimal import Decimal

import pytest

from pharmadesk import core_logic, directory, scope
from pharmadesk.constants import CollectionName, SubscriptionStatus, UserRole
from pharmadesk.core_logic import BusinessRuleViolation, DuplicateEmailError, MissingReferenceError
from pharmadesk.scope import Caller

from conftest import FIXED_NOW


def _user(context, user_id):
    return core_logic.get_user(context, user_id)


@pytest.fixture
def multi_branch_manager(context):
    """Bob managing both seeded branches."""

    directory.assign_manager(context, "u2", "b2")
    return _user(context, "u2")


# ---------------------------------------------------------------------------
# Branches
# ---------------------------------------------------------------------------


def test_create_branch_persists_new_branch(context):
    """New branches get a generated id and are stored."""

    branch = directory.create_branch(context, " Uptown ", "Boston")

    assert branch.name == "Uptown"
    assert branch.branch_id.startswith("b")
    assert core_logic.get_branch(context, branch.branch_id) == branch


def test_create_branch_requires_name(context):
    with pytest.raises(BusinessRuleViolation):
        directory.create_branch(context, "  ", "Nowhere")


def test_delete_branch_cascades_to_manager_assignments(context, multi_branch_manager):
    """Deleting b1 from a manager of [b1, b2] leaves [b2]."""

    assert multi_branch_manager.assigned_branch_ids == ("b1", "b2")

    directory.delete_branch(context, "b1")

    assert _user(context, "u2").assigned_branch_ids == ("b2",)
    assert all("b1" not in u.assigned_branch_ids for u in context.store.get(CollectionName.USERS))


def test_deleted_branch_never_returned_by_scope(context, owner):
    """No caller sees a deleted branch in branch listings."""

    directory.delete_branch(context, "b2")

    for caller in (owner, Caller("u2", UserRole.MANAGER, assigned_branch_ids=("b2",))):
        assert "b2" not in [b.branch_id for b in scope.scope_branches(context.store, caller)]


def test_delete_branch_keeps_products_and_transactions(context):
    """Products referencing a deleted branch remain as orphans."""

    directory.delete_branch(context, "b2")
    assert any(p.branch_id == "b2" for p in context.store.get(CollectionName.PRODUCTS))


def test_delete_unknown_branch_raises(context):
    with pytest.raises(MissingReferenceError):
        directory.delete_branch(context, "b404")


# ---------------------------------------------------------------------------
# Manager assignment
# ---------------------------------------------------------------------------


def test_assign_manager_is_idempotent(context):
    """Assigning twice yields the same assignments as assigning once."""

    once = directory.assign_manager(context, "u2", "b2").assigned_branch_ids
    twice = directory.assign_manager(context, "u2", "b2").assigned_branch_ids

    assert once == twice == ("b1", "b2")
    assert _user(context, "u2").assigned_branch_ids == ("b1", "b2")


@pytest.mark.parametrize(
    "manager_id, branch_id",
    [("u404", "b1"), ("u3", "b1"), ("u2", "b404")],
)
def test_assign_manager_unknown_references(context, manager_id, branch_id):
    """Unknown managers, non-managers and unknown branches are missing references."""

    with pytest.raises(MissingReferenceError):
        directory.assign_manager(context, manager_id, branch_id)


def test_unassign_manager(context, multi_branch_manager):
    """Unassigning removes only the named branch and tolerates repeats."""

    directory.unassign_manager(context, "u2", "b1")
    assert directory.unassign_manager(context, "u2", "b1").assigned_branch_ids == ("b2",)


def test_unassign_non_manager_raises(context):
    with pytest.raises(MissingReferenceError):
        directory.unassign_manager(context, "u1", "b1")


def test_list_managers(context):
    assert [u.user_id for u in directory.list_managers(context)] == ["u2"]


# ---------------------------------------------------------------------------
# Access codes
# ---------------------------------------------------------------------------


def test_generate_access_code_is_four_digits():
    """Codes are four-digit strings between 1000 and 9999."""

    for _ in range(200):
        code = directory.generate_access_code()
        assert len(code) == 4 and 1000 <= int(code) <= 9999


def test_generate_access_code_avoids_existing():
    """Only the one remaining free code can be returned."""

    taken = [str(n) for n in range(1000, 10000) if n != 4321]
    assert directory.generate_access_code(taken) == "4321"


def test_generate_access_code_exhausted():
    with pytest.raises(BusinessRuleViolation):
        directory.generate_access_code(str(n) for n in range(1000, 10000))


def test_issue_access_code_replaces_code(context, monkeypatch):
    """A fresh code is stored on the manager."""

    monkeypatch.setattr(directory, "generate_access_code", lambda existing=(): "5555")
    manager = directory.issue_access_code(context, "u2")
    assert manager.access_code == "5555"
    assert _user(context, "u2").access_code == "5555"


# ---------------------------------------------------------------------------
# Accounts
# ---------------------------------------------------------------------------


def _registration(**overrides):
    values = dict(
        name="Dana Pharm",
        email="dana@pharmadesk.example",
        secret="secret1",
        role=UserRole.PHARMACIST,
        branch_id="b1",
        timestamp=FIXED_NOW,
    )
    values.update(overrides)
    return directory.RegistrationCommand(**values)


def test_register_pharmacist(context):
    """Pharmacists sign up into an existing branch with a seven day trial."""

    user = directory.register_user(context, _registration())

    assert user.role is UserRole.PHARMACIST
    assert user.branch_id == "b1"
    assert user.subscription_status is SubscriptionStatus.ACTIVE
    assert user.trial_ends_at == (FIXED_NOW + timedelta(days=7)).isoformat()
    assert _user(context, user.user_id) == user


def test_register_owner_has_no_branch(context):
    user = directory.register_user(context, _registration(role=UserRole.OWNER, branch_id="b1"))
    assert user.branch_id is None


def test_register_rejects_duplicate_email_case_insensitively(context):
    """Emails are unique regardless of case."""

    with pytest.raises(DuplicateEmailError):
        directory.register_user(context, _registration(email="Charlie@PharmaDesk.example"))


@pytest.mark.parametrize(
    "overrides, error",
    [
        ({"role": UserRole.MANAGER}, BusinessRuleViolation),
        ({"branch_id": None}, BusinessRuleViolation),
        ({"branch_id": "b404"}, MissingReferenceError),
        ({"secret": "short"}, ValueError),
        ({"name": " "}, ValueError),
        ({"email": ""}, ValueError),
    ],
)
def test_register_validation(context, overrides, error):
    """Sign-up rules reject bad requests without storing anything."""

    before = context.store.get(CollectionName.USERS)
    with pytest.raises(error):
        directory.register_user(context, _registration(**overrides))
    assert context.store.get(CollectionName.USERS) == before


def test_create_manager_gets_unique_code(context):
    """Owner-created managers receive an access code not used by anyone else."""

    manager = directory.create_manager(context, "Erin", "erin@pharmadesk.example", branch_ids=["b2", "b2"])

    assert manager.role is UserRole.MANAGER
    assert manager.assigned_branch_ids == ("b2",)
    assert manager.access_code != "1234"
    assert len(manager.access_code) == 4


def test_create_manager_duplicate_email(context):
    with pytest.raises(DuplicateEmailError):
        directory.create_manager(context, "Bob Again", "bob@pharmadesk.example")


def test_delete_user(context):
    directory.delete_user(context, "u3")
    with pytest.raises(MissingReferenceError):
        core_logic.get_user(context, "u3")


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------


def _product_command(**overrides):
    values = dict(
        name="Paracetamol 500mg",
        sku="PAR500",
        category="Pain Relief",
        price=Decimal("4.00"),
        cost=Decimal("1.20"),
        stock=60,
        min_stock_level=20,
        expiry_date=date(2027, 3, 1),
        branch_id="b2",
    )
    values.update(overrides)
    return directory.ProductCommand(**values)


def test_add_product(context):
    """Products are validated and appended to the branch's inventory."""

    product = directory.add_product(context, _product_command())

    assert product.branch_id == "b2"
    assert core_logic.get_product(context, product.product_id) == product


def test_add_product_sku_unique_per_branch(context):
    """The same SKU may exist at another branch but not twice at one."""

    directory.add_product(context, _product_command(sku="AMX500"))
    with pytest.raises(BusinessRuleViolation):
        directory.add_product(context, _product_command(sku="amx500"))


@pytest.mark.parametrize(
    "overrides, error",
    [
        ({"branch_id": "b404"}, MissingReferenceError),
        ({"price": Decimal("-1")}, ValueError),
        ({"stock": -5}, ValueError),
        ({"min_stock_level": 1.5}, ValueError),
        ({"sku": " "}, ValueError),
    ],
)
def test_add_product_validation(context, overrides, error):
    with pytest.raises(error):
        directory.add_product(context, _product_command(**overrides))


def test_seeded_manager_unchanged_by_other_operations(context):
    """Directory operations on other users leave the seeded manager alone."""

    before = _user(context, "u2")
    directory.register_user(context, _registration())
    assert _user(context, "u2") == before

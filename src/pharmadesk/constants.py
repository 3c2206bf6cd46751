"""Enumerations shared across pharmadesk modules.

Centralises domain constants so that the data access layer, the business
logic modules and the command-line front end rely on a single source of truth
for roles, collection names and status flags.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"

# Fixed per-item, per-day revenue loss estimate used by the stockout rule.
STOCKOUT_DAILY_LOSS_PER_ITEM = 120
DEAD_STOCK_THRESHOLD = 200
EXPIRY_WINDOW_DAYS = 60
HIGH_MARGIN_MULTIPLIER = "1.5"
HIGH_MARGIN_MIN_STOCK = 50

ACCESS_CODE_MIN = 1000
ACCESS_CODE_MAX = 9999
MIN_SECRET_LENGTH = 6
SIGNUP_TRIAL_DAYS = 7


class UserRole(str, Enum):
    """Enumerate the roles a dashboard user can hold."""

    OWNER = "OWNER"
    MANAGER = "MANAGER"
    PHARMACIST = "PHARMACIST"


class SubscriptionStatus(str, Enum):
    """Enumerate subscription states attached to user accounts."""

    ACTIVE = "active"
    TRIAL = "trial"
    EXPIRED = "expired"


class InsightType(str, Enum):
    """Enumerate the categories of derived insights."""

    WARNING = "warning"
    SUCCESS = "success"
    PREDICTION = "prediction"
    INFO = "info"


class StockSyncStatus(str, Enum):
    """Record whether a committed sale was fully applied to stock levels."""

    OK = "OK"
    STOCK_SYNC_FAILED = "STOCK_SYNC_FAILED"


class CheckoutState(str, Enum):
    """Lifecycle of a single checkout attempt."""

    BUILDING_CART = "BUILDING_CART"
    VALIDATING = "VALIDATING"
    COMMITTED = "COMMITTED"
    REJECTED = "REJECTED"


class CollectionName(str, Enum):
    """Enumerate the persisted entity collections managed by the store."""

    BRANCHES = "branches"
    USERS = "users"
    PRODUCTS = "products"
    TRANSACTIONS = "transactions"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the workbook store."""

    META = "Meta"
    BRANCHES = "Branches"
    USERS = "Users"
    PRODUCTS = "Products"
    TRANSACTIONS = "Transactions"
    TRANSACTION_ITEMS = "TransactionItems"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "STOCKOUT_DAILY_LOSS_PER_ITEM",
    "DEAD_STOCK_THRESHOLD",
    "EXPIRY_WINDOW_DAYS",
    "HIGH_MARGIN_MULTIPLIER",
    "HIGH_MARGIN_MIN_STOCK",
    "ACCESS_CODE_MIN",
    "ACCESS_CODE_MAX",
    "MIN_SECRET_LENGTH",
    "SIGNUP_TRIAL_DAYS",
    "UserRole",
    "SubscriptionStatus",
    "InsightType",
    "StockSyncStatus",
    "CheckoutState",
    "CollectionName",
    "SheetName",
]

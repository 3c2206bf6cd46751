"""Data access layer for pharmadesk.

This module owns everything that touches persisted state. Business rules
live elsewhere; the helpers here only read, write and convert records.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening and persisting the ``openpyxl`` workbook.
3. The entity store: a ``get``/``put`` contract over the four named
   collections (branches, users, products, transactions) with
   seed-on-first-access semantics, backed either by a workbook or by memory.
"""


from __future__ import annotations

import configparser
import threading
from collections import defaultdict
from dataclasses import dataclass
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Set, Tuple

import openpyxl
from openpyxl.styles import Font
from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet

from . import log
from .constants import (
    CollectionName,
    SheetName,
    StockSyncStatus,
    SubscriptionStatus,
    UserRole,
)


CONFIG_FILE_NAME = "config.ini"
DEFAULT_OPERATING_EXPENSE_BASE = Decimal("2000")
DEFAULT_OPERATING_EXPENSE_PER_TRANSACTION = Decimal("5")

SHEET_COLUMNS: Mapping[SheetName, Sequence[str]] = {
    SheetName.BRANCHES: ["BranchID", "BranchName", "Location"],
    SheetName.USERS: [
        "UserID",
        "UserName",
        "Email",
        "Role",
        "BranchID",
        "AssignedBranchIDs",
        "CredentialSecret",
        "AccessCode",
        "SubscriptionStatus",
        "TrialEndsAt",
    ],
    SheetName.PRODUCTS: [
        "ProductID",
        "ProductName",
        "SKU",
        "Category",
        "Price",
        "Cost",
        "Stock",
        "MinStockLevel",
        "ExpiryDate",
        "BranchID",
    ],
    SheetName.TRANSACTIONS: [
        "TransactionID",
        "Timestamp",
        "Total",
        "BranchID",
        "PharmacistID",
        "StockSync",
    ],
    SheetName.TRANSACTION_ITEMS: [
        "TransactionID",
        "ProductID",
        "ProductName",
        "Quantity",
        "Price",
    ],
}

COLLECTION_SHEETS: Mapping[CollectionName, SheetName] = {
    CollectionName.BRANCHES: SheetName.BRANCHES,
    CollectionName.USERS: SheetName.USERS,
    CollectionName.PRODUCTS: SheetName.PRODUCTS,
    CollectionName.TRANSACTIONS: SheetName.TRANSACTIONS,
}

# Errors that signal a malformed persisted record rather than a programming bug.
DESERIALIZATION_ERRORS = (ValueError, TypeError, KeyError, InvalidOperation)


class StoreError(RuntimeError):
    """Raised when a write would replace a collection that could not be read."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    pharmacy_name: str
    schema_version: str
    operating_expense_base: Decimal = DEFAULT_OPERATING_EXPENSE_BASE
    operating_expense_per_transaction: Decimal = DEFAULT_OPERATING_EXPENSE_PER_TRANSACTION


@dataclass(frozen=True)
class BranchRow:
    """A physical pharmacy location; the unit of data partitioning."""

    branch_id: str
    name: str
    location: str


@dataclass(frozen=True)
class UserRow:
    """In-memory view of a dashboard account."""

    user_id: str
    name: str
    email: str
    role: UserRole
    branch_id: Optional[str] = None
    assigned_branch_ids: Tuple[str, ...] = ()
    credential_secret: Optional[str] = None
    access_code: Optional[str] = None
    subscription_status: SubscriptionStatus = SubscriptionStatus.ACTIVE
    trial_ends_at: str = ""


@dataclass(frozen=True)
class ProductRow:
    """A stocked product belonging to exactly one branch."""

    product_id: str
    name: str
    sku: str
    category: str
    price: Decimal
    cost: Decimal
    stock: int
    min_stock_level: int
    expiry_date: date
    branch_id: str


@dataclass(frozen=True)
class LineItem:
    """One product line of a committed transaction, priced at commit time."""

    product_id: str
    product_name: str
    quantity: int
    price: Decimal


@dataclass(frozen=True)
class TransactionRow:
    """Immutable point-of-sale transaction record."""

    transaction_id: str
    timestamp_iso: str
    total: Decimal
    branch_id: str
    pharmacist_id: str
    items: Tuple[LineItem, ...] = ()
    stock_sync: StockSyncStatus = StockSyncStatus.OK


# ---------------------------------------------------------------------------
# Configuration
# ---------------------------------------------------------------------------


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification. Otherwise the function walks up from the current
    working directory toward the filesystem root looking for a file named
    ``CONFIG_FILE_NAME``; the first match is considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered file.

    Raises:
        FileNotFoundError: If no ``CONFIG_FILE_NAME`` exists in any parent
            directory.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute. ``~`` is expanded.

    Returns:
        configparser.ConfigParser: Parser containing the raw configuration.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    The ``[System]`` section is mandatory. The ``[Finance]`` section is
    optional; its entries fall back to the default operating expense policy.
    Relative ``DataFile`` entries are anchored to ``base_path`` (or the current
    working directory) and resolved.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory used to anchor a relative
            ``DataFile``.

    Returns:
        ConfigSettings: Immutable settings container.

    Raises:
        KeyError: If a required option is missing.
        ValueError: If a finance figure is not a valid decimal.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        pharmacy_name = parser.get("System", "PharmacyName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    base_raw = parser.get("Finance", "OperatingExpenseBase",
                          fallback=str(DEFAULT_OPERATING_EXPENSE_BASE))
    per_tx_raw = parser.get("Finance", "OperatingExpensePerTransaction",
                            fallback=str(DEFAULT_OPERATING_EXPENSE_PER_TRANSACTION))
    try:
        expense_base = Decimal(base_raw)
        expense_per_tx = Decimal(per_tx_raw)
    except InvalidOperation as exc:
        raise ValueError(f"Invalid finance configuration value: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        pharmacy_name=pharmacy_name,
        schema_version=schema_version,
        operating_expense_base=expense_base,
        operating_expense_per_transaction=expense_per_tx,
    )


# ---------------------------------------------------------------------------
# Workbook lifecycle
# ---------------------------------------------------------------------------


def open_workbook(data_file: Path) -> Workbook:
    """Open the data workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook at ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def ensure_sheet(workbook: Workbook, sheet_name: SheetName) -> Worksheet:
    """Return ``sheet_name``, creating it with a bold header row if absent."""

    if sheet_name.value in workbook.sheetnames:
        return workbook[sheet_name.value]

    worksheet = workbook.create_sheet(title=sheet_name.value)
    bold_font = Font(bold=True)
    for column_index, column_name in enumerate(SHEET_COLUMNS[sheet_name], start=1):
        cell = worksheet.cell(row=1, column=column_index)
        cell.value = column_name
        cell.font = bold_font
    return worksheet


def read_schema_version(workbook: Workbook) -> Optional[str]:
    """Return the ``SchemaVersion`` recorded on the ``Meta`` sheet, if any."""

    if SheetName.META.value not in workbook.sheetnames:
        return None
    for key, value, *_ in workbook[SheetName.META.value].iter_rows(values_only=True):
        if key == "SchemaVersion":
            return str(value) if value is not None else None
    return None


def _clear_rows(worksheet: Worksheet) -> None:
    if worksheet.max_row > 1:
        worksheet.delete_rows(2, worksheet.max_row - 1)


def _iter_data_rows(worksheet: Worksheet) -> Iterable[Sequence[object]]:
    for raw in worksheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


# ---------------------------------------------------------------------------
# Row conversion
# ---------------------------------------------------------------------------


def _to_decimal(raw: object) -> Decimal:
    if raw is None or raw == "":
        raise ValueError("Missing decimal value")
    return Decimal(str(raw))


def _to_int(raw: object) -> int:
    if raw is None or raw == "":
        raise ValueError("Missing integer value")
    if isinstance(raw, float) and not raw.is_integer():
        raise ValueError(f"Expected a whole number, found {raw}")
    return int(raw)


def _to_date(raw: object) -> date:
    if isinstance(raw, datetime):
        return raw.date()
    if isinstance(raw, date):
        return raw
    return date.fromisoformat(str(raw))


def _optional_text(raw: object) -> Optional[str]:
    if raw is None or raw == "":
        return None
    return str(raw)


def _split_ids(raw: object) -> Tuple[str, ...]:
    if raw is None:
        return ()
    return tuple(part.strip() for part in str(raw).split(",") if part.strip())


def serialize_branch(record: BranchRow) -> list[object]:
    return [record.branch_id, record.name, record.location]


def deserialize_branch(raw_row: Sequence[object]) -> BranchRow:
    branch_id, name, location = raw_row[:3]
    if branch_id is None:
        raise ValueError("Branch row without an identifier")
    return BranchRow(branch_id=str(branch_id), name=str(name or ""), location=str(location or ""))


def serialize_user(record: UserRow) -> list[object]:
    return [
        record.user_id,
        record.name,
        record.email,
        record.role.value,
        record.branch_id,
        ",".join(record.assigned_branch_ids) or None,
        record.credential_secret,
        record.access_code,
        record.subscription_status.value,
        record.trial_ends_at,
    ]


def deserialize_user(raw_row: Sequence[object]) -> UserRow:
    """Convert a raw ``Users`` row into a :class:`UserRow`.

    Access codes are coerced to text because spreadsheets happily turn
    ``"1234"`` into the integer ``1234``.
    """

    (
        user_id,
        name,
        email,
        role,
        branch_id,
        assigned,
        secret,
        access_code,
        status,
        trial_ends_at,
    ) = raw_row[:10]
    if user_id is None or email is None:
        raise ValueError("User row without identifier or email")
    return UserRow(
        user_id=str(user_id),
        name=str(name or ""),
        email=str(email),
        role=UserRole(str(role)),
        branch_id=_optional_text(branch_id),
        assigned_branch_ids=_split_ids(assigned),
        credential_secret=_optional_text(secret),
        access_code=_optional_text(access_code),
        subscription_status=SubscriptionStatus(str(status)),
        trial_ends_at=str(trial_ends_at or ""),
    )


def serialize_product(record: ProductRow) -> list[object]:
    return [
        record.product_id,
        record.name,
        record.sku,
        record.category,
        record.price,
        record.cost,
        record.stock,
        record.min_stock_level,
        record.expiry_date.isoformat(),
        record.branch_id,
    ]


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw ``Products`` row into a :class:`ProductRow`.

    Prices and costs become :class:`~decimal.Decimal` instances and stock
    levels must be whole numbers; anything else is treated as corruption.
    """

    (
        product_id,
        name,
        sku,
        category,
        price,
        cost,
        stock,
        min_stock,
        expiry,
        branch_id,
    ) = raw_row[:10]
    if product_id is None or branch_id is None:
        raise ValueError("Product row without identifier or branch")
    return ProductRow(
        product_id=str(product_id),
        name=str(name or ""),
        sku=str(sku or ""),
        category=str(category or ""),
        price=_to_decimal(price),
        cost=_to_decimal(cost),
        stock=_to_int(stock),
        min_stock_level=_to_int(min_stock),
        expiry_date=_to_date(expiry),
        branch_id=str(branch_id),
    )


def serialize_transaction(record: TransactionRow) -> list[object]:
    return [
        record.transaction_id,
        record.timestamp_iso,
        record.total,
        record.branch_id,
        record.pharmacist_id,
        record.stock_sync.value,
    ]


def serialize_line_item(transaction_id: str, item: LineItem) -> list[object]:
    return [transaction_id, item.product_id, item.product_name, item.quantity, item.price]


def deserialize_line_item(raw_row: Sequence[object]) -> Tuple[str, LineItem]:
    transaction_id, product_id, product_name, quantity, price = raw_row[:5]
    if transaction_id is None or product_id is None:
        raise ValueError("Line item without transaction or product reference")
    return str(transaction_id), LineItem(
        product_id=str(product_id),
        product_name=str(product_name or ""),
        quantity=_to_int(quantity),
        price=_to_decimal(price),
    )


def deserialize_transaction(raw_row: Sequence[object], items: Sequence[LineItem] = ()) -> TransactionRow:
    transaction_id, timestamp_iso, total, branch_id, pharmacist_id, stock_sync = raw_row[:6]
    if transaction_id is None:
        raise ValueError("Transaction row without an identifier")
    return TransactionRow(
        transaction_id=str(transaction_id),
        timestamp_iso=str(timestamp_iso or ""),
        total=_to_decimal(total),
        branch_id=str(branch_id),
        pharmacist_id=str(pharmacist_id),
        items=tuple(items),
        stock_sync=StockSyncStatus(str(stock_sync or StockSyncStatus.OK.value)),
    )


# ---------------------------------------------------------------------------
# Seed data
# ---------------------------------------------------------------------------


def build_seed_data(now: Optional[datetime] = None) -> Dict[CollectionName, Tuple[Any, ...]]:
    """Return the fixed initial dataset written on first access.

    Two branches, one user per role and four products. Trial end dates are
    computed relative to ``now`` so a fresh installation always starts with a
    valid owner subscription.
    """

    now = now or datetime.now(UTC)
    branches = (
        BranchRow("b1", "Downtown NYC", "New York"),
        BranchRow("b2", "Austin Hub", "Austin"),
    )
    users = (
        UserRow(
            user_id="u1",
            name="Alice Owner",
            email="admin@pharmadesk.example",
            role=UserRole.OWNER,
            credential_secret="password",
            trial_ends_at=(now + timedelta(days=30)).isoformat(),
        ),
        UserRow(
            user_id="u2",
            name="Bob Manager",
            email="bob@pharmadesk.example",
            role=UserRole.MANAGER,
            assigned_branch_ids=("b1",),
            access_code="1234",
            trial_ends_at=now.isoformat(),
        ),
        UserRow(
            user_id="u3",
            name="Charlie Pharm",
            email="charlie@pharmadesk.example",
            role=UserRole.PHARMACIST,
            branch_id="b1",
            credential_secret="password",
            trial_ends_at=now.isoformat(),
        ),
    )
    products = (
        ProductRow("p1", "Amoxicillin 500mg", "AMX500", "Antibiotics", Decimal("12.50"), Decimal("5.00"),
                   150, 50, date(2025, 12, 1), "b1"),
        ProductRow("p2", "Ibuprofen 200mg", "IBU200", "Pain Relief", Decimal("8.00"), Decimal("2.50"),
                   40, 100, date(2026, 1, 15), "b1"),
        ProductRow("p3", "Cetirizine 10mg", "CET010", "Allergy", Decimal("15.00"), Decimal("6.00"),
                   200, 30, date(2024, 11, 1), "b1"),
        ProductRow("p4", "Vitamin D3", "VITD3", "Supplements", Decimal("25.00"), Decimal("12.00"),
                   80, 20, date(2025, 6, 30), "b2"),
    )
    return {
        CollectionName.BRANCHES: branches,
        CollectionName.USERS: users,
        CollectionName.PRODUCTS: products,
        CollectionName.TRANSACTIONS: (),
    }


# ---------------------------------------------------------------------------
# Entity store
# ---------------------------------------------------------------------------


class EntityStore:
    """Durable ``get``/``put`` persistence for the four entity collections.

    On first access to a collection that has never been written the store
    persists the seed value and returns it, so subsequent reads are stable. A
    collection that fails to deserialize is answered with the seed value and
    the failure is logged and counted in :attr:`fallback_counts`. The stored
    data is left untouched for manual recovery: until the store is reloaded,
    :meth:`put` refuses to overwrite a collection that fell back.

    Writers hold :attr:`lock` across a read-modify-write cycle. Rows are
    frozen dataclasses, so a caller can only change state by writing a new
    list back through :meth:`put`.
    """

    def __init__(self, *, seeds: Optional[Mapping[CollectionName, Sequence[Any]]] = None):
        self.lock = threading.RLock()
        source = build_seed_data() if seeds is None else seeds
        self._seeds: Dict[CollectionName, Tuple[Any, ...]] = {
            CollectionName(name): tuple(rows) for name, rows in source.items()
        }
        self.fallback_counts: Dict[CollectionName, int] = defaultdict(int)
        self._unreadable: Set[CollectionName] = set()

    def seed_for(self, collection: CollectionName) -> List[Any]:
        return list(self._seeds.get(CollectionName(collection), ()))

    def get(self, collection: CollectionName) -> List[Any]:
        collection = CollectionName(collection)
        with self.lock:
            if not self._has_collection(collection):
                seed = self.seed_for(collection)
                log.info("Seeding collection '%s' with %d records", collection.value, len(seed))
                self._write(collection, seed)
                return seed
            try:
                return list(self._read(collection))
            except DESERIALIZATION_ERRORS as exc:
                self.fallback_counts[collection] += 1
                self._unreadable.add(collection)
                log.error(
                    "Failed to deserialize collection '%s' (fallback #%d); serving seed data: %s",
                    collection.value,
                    self.fallback_counts[collection],
                    exc,
                )
                return self.seed_for(collection)

    def put(self, collection: CollectionName, rows: Iterable[Any]) -> None:
        collection = CollectionName(collection)
        records = list(rows)
        with self.lock:
            if collection in self._unreadable:
                log.error(
                    "Refusing to overwrite collection '%s' that failed to deserialize",
                    collection.value,
                )
                raise StoreError(
                    f"Collection '{collection.value}' holds malformed data; repair it before writing"
                )
            self._write(collection, records)
        log.debug("Stored %d records in collection '%s'", len(records), collection.value)

    def _has_collection(self, collection: CollectionName) -> bool:
        raise NotImplementedError

    def _read(self, collection: CollectionName) -> Iterable[Any]:
        raise NotImplementedError

    def _write(self, collection: CollectionName, rows: Sequence[Any]) -> None:
        raise NotImplementedError


class MemoryStore(EntityStore):
    """Dict-backed store used by tests and embedders that need no disk."""

    def __init__(
        self,
        *,
        seeds: Optional[Mapping[CollectionName, Sequence[Any]]] = None,
        data: Optional[Mapping[CollectionName, Sequence[Any]]] = None,
    ):
        super().__init__(seeds=seeds)
        self._data: Dict[CollectionName, Tuple[Any, ...]] = {}
        for name, rows in (data or {}).items():
            self._data[CollectionName(name)] = tuple(rows)

    def _has_collection(self, collection: CollectionName) -> bool:
        return collection in self._data

    def _read(self, collection: CollectionName) -> Iterable[Any]:
        return self._data[collection]

    def _write(self, collection: CollectionName, rows: Sequence[Any]) -> None:
        self._data[collection] = tuple(rows)


class WorkbookStore(EntityStore):
    """Store persisting each collection on its own worksheet.

    A collection exists once its sheet exists; the bootstrap workbook only
    carries the ``Meta`` sheet, so every collection is seeded on first read.
    When ``data_file`` is set every :meth:`put` saves the workbook
    immediately; if that save fails the touched sheets are restored to their
    previous rows before the error propagates.
    """

    def __init__(
        self,
        workbook: Workbook,
        *,
        data_file: Optional[Path] = None,
        seeds: Optional[Mapping[CollectionName, Sequence[Any]]] = None,
    ):
        super().__init__(seeds=seeds)
        self.workbook = workbook
        self.data_file = data_file

    def _has_collection(self, collection: CollectionName) -> bool:
        return COLLECTION_SHEETS[collection].value in self.workbook.sheetnames

    def _read(self, collection: CollectionName) -> Iterable[Any]:
        sheet = self.workbook[COLLECTION_SHEETS[collection].value]
        if collection is CollectionName.BRANCHES:
            return [deserialize_branch(raw) for raw in _iter_data_rows(sheet)]
        if collection is CollectionName.USERS:
            return [deserialize_user(raw) for raw in _iter_data_rows(sheet)]
        if collection is CollectionName.PRODUCTS:
            return [deserialize_product(raw) for raw in _iter_data_rows(sheet)]
        return self._read_transactions(sheet)

    def _read_transactions(self, sheet: Worksheet) -> List[TransactionRow]:
        items_by_tx: Dict[str, List[LineItem]] = defaultdict(list)
        if SheetName.TRANSACTION_ITEMS.value in self.workbook.sheetnames:
            items_sheet = self.workbook[SheetName.TRANSACTION_ITEMS.value]
            for raw in _iter_data_rows(items_sheet):
                transaction_id, item = deserialize_line_item(raw)
                items_by_tx[transaction_id].append(item)
        return [
            deserialize_transaction(raw, items_by_tx.get(str(raw[0]), ()))
            for raw in _iter_data_rows(sheet)
        ]

    def _write(self, collection: CollectionName, rows: Sequence[Any]) -> None:
        touched = [COLLECTION_SHEETS[collection]]
        if collection is CollectionName.TRANSACTIONS:
            touched.append(SheetName.TRANSACTION_ITEMS)
        previous = {name: self._capture_sheet(name) for name in touched}

        sheet = ensure_sheet(self.workbook, COLLECTION_SHEETS[collection])
        _clear_rows(sheet)
        if collection is CollectionName.BRANCHES:
            for row in rows:
                sheet.append(serialize_branch(row))
        elif collection is CollectionName.USERS:
            for row in rows:
                sheet.append(serialize_user(row))
        elif collection is CollectionName.PRODUCTS:
            for row in rows:
                sheet.append(serialize_product(row))
        else:
            items_sheet = ensure_sheet(self.workbook, SheetName.TRANSACTION_ITEMS)
            _clear_rows(items_sheet)
            for row in rows:
                sheet.append(serialize_transaction(row))
                for item in row.items:
                    items_sheet.append(serialize_line_item(row.transaction_id, item))

        if self.data_file is None:
            return
        try:
            save_workbook(self.workbook, self.data_file)
        except OSError:
            # the sheet must match what is on disk
            for name, rows_before in previous.items():
                self._restore_sheet(name, rows_before)
            log.error("Save of collection '%s' failed; in-memory sheet rolled back", collection.value)
            raise

    def _capture_sheet(self, sheet_name: SheetName) -> Optional[List[Tuple[object, ...]]]:
        if sheet_name.value not in self.workbook.sheetnames:
            return None
        return list(self.workbook[sheet_name.value].iter_rows(min_row=2, values_only=True))

    def _restore_sheet(self, sheet_name: SheetName, rows: Optional[List[Tuple[object, ...]]]) -> None:
        if rows is None:
            if sheet_name.value in self.workbook.sheetnames:
                self.workbook.remove(self.workbook[sheet_name.value])
            return
        sheet = ensure_sheet(self.workbook, sheet_name)
        _clear_rows(sheet)
        for raw in rows:
            sheet.append(list(raw))

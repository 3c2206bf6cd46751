"""Shared pytest fixtures and utilities for pharmadesk tests."""

from __future__ import annotations

import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from pharmadesk import constants, core_logic, data_manager  # noqa: E402
from pharmadesk.scope import Caller  # noqa: E402
from pharmadesk.setup_workbook import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
FIXED_NOW = datetime(2025, 1, 15, 9, 30, tzinfo=UTC)
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "PharmacyName = {pharmacy_name}\n"
    "SchemaVersion = {schema_version}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    pharmacy_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized data workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        filename: str = "pharmacy_data.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, schema_version=schema_version, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        pharmacy_name: str = "Test Pharmacy",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        extra: str = "",
    ) -> ConfigBundle:
        bundle_dir_name = f"bundle_{uuid.uuid4().hex}"
        bundle_dir = tmp_path / bundle_dir_name
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=bundle_dir_name, schema_version=schema_version)
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                pharmacy_name=pharmacy_name,
                schema_version=schema_version,
            )
            + extra
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            pharmacy_name=pharmacy_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """Load a workbook-backed runtime context through the public API."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# In-memory fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def seeds() -> dict:
    """Seed dataset with a fixed clock so trial dates are deterministic."""

    return data_manager.build_seed_data(now=FIXED_NOW)


@pytest.fixture
def memory_store(seeds: dict) -> data_manager.MemoryStore:
    return data_manager.MemoryStore(seeds=seeds)


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "pharmacy_data.xlsx",
        pharmacy_name="Test Pharmacy",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def context(
    settings: data_manager.ConfigSettings,
    memory_store: data_manager.MemoryStore,
) -> core_logic.RuntimeContext:
    """Assemble a runtime context around the in-memory store."""

    return core_logic.RuntimeContext(settings=settings, store=memory_store)


@pytest.fixture
def owner() -> Caller:
    return Caller(user_id="u1", role=constants.UserRole.OWNER)


@pytest.fixture
def manager() -> Caller:
    return Caller(user_id="u2", role=constants.UserRole.MANAGER, assigned_branch_ids=("b1",))


@pytest.fixture
def pharmacist() -> Caller:
    return Caller(user_id="u3", role=constants.UserRole.PHARMACIST, branch_id="b1")


@pytest.fixture
def make_product() -> Callable[..., data_manager.ProductRow]:
    """Factory for product rows with sensible defaults."""

    def _make(product_id: str = "px", **overrides) -> data_manager.ProductRow:
        values = dict(
            product_id=product_id,
            name=f"Product {product_id}",
            sku=product_id.upper(),
            category="General",
            price=Decimal("10.00"),
            cost=Decimal("4.00"),
            stock=20,
            min_stock_level=5,
            expiry_date=date(2030, 1, 1),
            branch_id="b1",
        )
        values.update(overrides)
        return data_manager.ProductRow(**values)

    return _make


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``core_logic.datetime`` to return a predetermined moment."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply

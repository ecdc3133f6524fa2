"""Shared pytest fixtures and utilities for batch ledger tests."""

from __future__ import annotations

import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from batch_ledger import cli, constants, data_manager, ledger  # noqa: E402
from batch_ledger.catalog import ProductCatalog  # noqa: E402
from batch_ledger.models import (  # noqa: E402
    InvoiceData,
    InvoiceItem,
    OperationalContext,
    Product,
)
from batch_ledger.repository import InMemoryRepository  # noqa: E402
from batch_ledger.setup_excel import create_master_workbook  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_STAFF_ID = "STAFF-001"
STORE_ID = "STORE-001"
TODAY = date(2024, 1, 5)

_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "StoreId = {store_id}\n"
    "SchemaVersion = {schema_version}\n\n"
    "[Defaults]\n"
    "DefaultStaff = {default_staff_id}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Container bundling together config metadata for tests."""

    directory: Path
    config_path: Path
    workbook_path: Path
    default_staff_id: str
    schema_version: str
    store_id: str


def sample_products() -> list[Product]:
    """A small bakery catalog: two perishables, a packing item and a decoration."""

    return [
        Product(
            product_id="P-CAKE",
            name="Black Forest Cake",
            invoice_price=Decimal("91.00"),
            item_code="OG1001",
        ),
        Product(
            product_id="P-PUFF",
            name="Veg Puff",
            invoice_price=Decimal("12.00"),
            item_code="OS2001",
        ),
        Product(
            product_id="P-BOX",
            name="Cake Box",
            invoice_price=Decimal("8.00"),
            mrp=Decimal("10"),
            item_code="ID3001",
        ),
        Product(
            product_id="P-CANDLE",
            name="Birthday Candle",
            invoice_price=Decimal("2.00"),
            mrp=Decimal("5"),
            is_decoration=True,
        ),
    ]


def make_invoice(
    *lines: tuple[str, str, int, str],
    invoice_number: str = "INV-1001",
    invoice_date: date = TODAY,
    store_id: str = STORE_ID,
    total_amount: Decimal | None = None,
) -> InvoiceData:
    """Build invoice data from ``(item_code, item_name, qty, rate)`` tuples."""

    items = tuple(
        InvoiceItem(
            item_code=code,
            item_name=name,
            qty=qty,
            rate=Decimal(rate),
            total=Decimal(qty) * Decimal(rate),
            sl_no=position,
        )
        for position, (code, name, qty, rate) in enumerate(lines, start=1)
    )
    computed = sum((item.line_total for item in items), Decimal("0"))
    return InvoiceData(
        invoice_number=invoice_number,
        invoice_date=invoice_date,
        store_id=store_id,
        items=items,
        total_qty=sum(item.qty for item in items),
        total_amount=total_amount if total_amount is not None else computed,
    )


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Ensure sys.path modifications are undone after the test session."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def products() -> list[Product]:
    return sample_products()


@pytest.fixture
def repository() -> InMemoryRepository:
    return InMemoryRepository()


@pytest.fixture
def catalog(products: list[Product]) -> ProductCatalog:
    return ProductCatalog(products)


@pytest.fixture
def ledger_service(repository: InMemoryRepository, catalog: ProductCatalog) -> ledger.LedgerService:
    """Ledger over an in-memory repository with the sample catalog loaded."""

    return ledger.LedgerService(repository, catalog)


@pytest.fixture
def op_context() -> OperationalContext:
    """Operational context for the fixed business date used across tests."""

    return OperationalContext(
        store_id=STORE_ID,
        today=TODAY,
        timestamp=datetime(2024, 1, 5, 9, 30, tzinfo=UTC),
    )


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory that creates an initialized ledger workbook in a temp folder."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "ledger_workbook.xlsx",
        seed_products: bool = True,
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(
            workbook_path,
            products=sample_products() if seed_products else (),
            overwrite=True,
        )
        return workbook_path

    return _create_workbook


@pytest.fixture
def ledger_workbook_path(workbook_factory: Callable[..., Path]) -> Path:
    """Return a fresh ledger workbook seeded with the sample catalog."""

    return workbook_factory(subdir=f"workbook_{uuid.uuid4().hex}")


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Provide a callable that creates config/workbook bundles on demand."""

    def _create_config(
        *,
        make_relative: bool = False,
        store_id: str = STORE_ID,
        schema_version: str = DEFAULT_SCHEMA_VERSION,
        default_staff_id: str = DEFAULT_STAFF_ID,
    ) -> ConfigBundle:
        bundle_id = uuid.uuid4().hex
        bundle_dir = tmp_path / f"bundle_{bundle_id}"
        bundle_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = workbook_factory(subdir=f"bundle_{bundle_id}")
        data_file_entry = workbook_path.name if make_relative else str(workbook_path)
        config_path = bundle_dir / "config.ini"
        config_path.write_text(
            _CONFIG_TEMPLATE.format(
                data_file=data_file_entry,
                store_id=store_id,
                schema_version=schema_version,
                default_staff_id=default_staff_id,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            default_staff_id=default_staff_id,
            schema_version=schema_version,
            store_id=store_id,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Convenience fixture returning only the config path."""

    return config_factory().config_path


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Provide a list of command specs for indexing tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


@pytest.fixture
def mock_workbook() -> Mock:
    """Return a mock workbook object for runtime tests."""

    return Mock(name="workbook")


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Provide default configuration settings for runtime context tests."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "ledger_workbook.xlsx",
        store_id=STORE_ID,
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
        default_staff_id=DEFAULT_STAFF_ID,
    )


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Patch ``ledger.datetime`` so record timestamps are predetermined."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(ledger, "datetime", _FixedDateTime)
        return moment

    return _apply

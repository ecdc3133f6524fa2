"""Runtime wiring between configuration, the workbook and the ledger service."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from pathlib import Path
from typing import Optional

from openpyxl.workbook import Workbook

from . import data_manager, log
from .catalog import ProductCatalog
from .constants import DEFAULT_MRP_MARKUP, EXPECTED_SCHEMA_VERSION, GrossDepletion
from .ledger import LedgerService
from .models import OperationalContext


@dataclass
class RuntimeContext:
    """Container for configuration, the live workbook and the ledger bound to it."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    ledger: LedgerService


def build_ledger(workbook: Workbook, *, settings: Optional[data_manager.ConfigSettings] = None) -> LedgerService:
    """Create a :class:`LedgerService` whose repository writes through to ``workbook``."""

    repository = data_manager.WorkbookRepository(workbook)
    markup = settings.mrp_markup if settings is not None else DEFAULT_MRP_MARKUP
    depletion = settings.gross_depletion if settings is not None else GrossDepletion.PROPORTIONAL
    catalog = ProductCatalog(repository.list_products(), mrp_markup=markup)
    return LedgerService(repository, catalog, depletion=depletion)


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings, open the workbook and build the ledger.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for ledger operations.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    workbook = data_manager.open_workbook(settings.data_file)
    ledger = build_ledger(workbook, settings=settings)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook, ledger=ledger)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Refuse to touch a workbook whose declared schema differs from ours.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def operational_context(
    context: RuntimeContext,
    *,
    today: Optional[date] = None,
    now: Optional[datetime] = None,
) -> OperationalContext:
    """Build the business-date context handed to invoice validation and sales.

    ``today`` defaults to the local calendar date. Records are stamped with
    the current local time, read once from the same clock, and moved onto
    ``today`` when an explicit business date other than the current one is
    requested.
    """

    now = now if now is not None else datetime.now().astimezone()
    today = today or now.date()
    timestamp = now if now.date() == today else datetime.combine(today, now.timetz())
    return OperationalContext(store_id=context.settings.store_id, today=today, timestamp=timestamp)


def persist_context(context: RuntimeContext) -> None:
    """Persist the in-memory workbook to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


__all__ = [
    "RuntimeContext",
    "build_ledger",
    "ensure_schema_version",
    "load_runtime_context",
    "operational_context",
    "persist_context",
]

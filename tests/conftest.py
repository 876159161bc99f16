"""Shared pytest fixtures and utilities for returns engine tests."""

from __future__ import annotations

import argparse
import sys
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Callable, Iterator, Optional, Sequence
from unittest.mock import Mock

import pytest

# Ensure source packages are importable without installation.
PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"

if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))

from returns_engine import cli, constants, core_logic, data_manager, processing  # noqa: E402
from returns_engine.setup_excel import build_master_workbook, create_master_workbook  # noqa: E402
from returns_engine.validation import ReturnForm, ReturnFormItem  # noqa: E402

DEFAULT_SCHEMA_VERSION = constants.EXPECTED_SCHEMA_VERSION
DEFAULT_PARTY_ID = "C-100"
DEFAULT_INVOICE_ID = "INV-1"
_CONFIG_TEMPLATE = (
    "[System]\n"
    "DataFile = {data_file}\n"
    "CompanyName = {company_name}\n"
    "SchemaVersion = {schema_version}\n"
)


@dataclass(frozen=True)
class ConfigBundle:
    """Paths and values written into one temporary config.ini."""

    directory: Path
    config_path: Path
    workbook_path: Path
    schema_version: str
    company_name: str


@pytest.fixture(scope="session", autouse=True)
def _restore_sys_path() -> Iterator[None]:
    """Undo the src/ path insertion once the session ends."""

    original = sys.path.copy()
    try:
        yield
    finally:
        sys.path[:] = original


@pytest.fixture
def workbook_factory(tmp_path: Path) -> Callable[..., Path]:
    """Factory writing an empty returns workbook (all sheets, headers only)."""

    def _create_workbook(
        *,
        subdir: str | None = None,
        filename: str = "master_workbook.xlsx",
    ) -> Path:
        base_dir = tmp_path if subdir is None else tmp_path / subdir
        base_dir.mkdir(parents=True, exist_ok=True)
        workbook_path = base_dir / filename
        create_master_workbook(workbook_path, overwrite=True)
        return workbook_path

    return _create_workbook


@pytest.fixture
def config_factory(tmp_path: Path, workbook_factory: Callable[..., Path]) -> Callable[..., ConfigBundle]:
    """Factory for isolated config.ini + workbook pairs."""

    def _create_config(
        *,
        make_relative: bool = False,
        company_name: str = "Test Co",
        schema_version: str = DEFAULT_SCHEMA_VERSION,
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
                company_name=company_name,
                schema_version=schema_version,
            )
        )
        return ConfigBundle(
            directory=bundle_dir,
            config_path=config_path,
            workbook_path=workbook_path,
            schema_version=schema_version,
            company_name=company_name,
        )

    return _create_config


@pytest.fixture
def config_file(config_factory: Callable[..., ConfigBundle]) -> Path:
    """Path to a config.ini pointing at a freshly bootstrapped workbook."""

    return config_factory().config_path


@pytest.fixture
def runtime_context(config_file: Path) -> core_logic.RuntimeContext:
    """File-backed runtime context loaded and schema-checked like the CLI does."""

    context = core_logic.load_runtime_context(config_file)
    core_logic.ensure_schema_version(context)
    return context


# ---------------------------------------------------------------------------
# In-memory stores
# ---------------------------------------------------------------------------


@pytest.fixture
def settings(tmp_path: Path) -> data_manager.ConfigSettings:
    """Settings pointing at a workbook path inside ``tmp_path``."""

    return data_manager.ConfigSettings(
        data_file=tmp_path / "master_workbook.xlsx",
        company_name="Test Co",
        schema_version=constants.EXPECTED_SCHEMA_VERSION,
    )


@pytest.fixture
def store(settings: data_manager.ConfigSettings) -> core_logic.RuntimeContext:
    """Runtime context backed by a fresh in-memory workbook."""

    return core_logic.RuntimeContext(settings=settings, workbook=build_master_workbook())


@pytest.fixture
def seed_stock() -> Callable[..., None]:
    """Register an inventory row in the context's workbook."""

    def _seed(
        context: core_logic.RuntimeContext,
        item_id: str,
        quantity: str | Decimal,
        *,
        item_type: constants.ItemType = constants.ItemType.RAW_MATERIALS,
        item_name: Optional[str] = None,
    ) -> None:
        data_manager.append_inventory_item(
            context.workbook,
            item_type,
            data_manager.InventoryRow(item_id, item_name or f"Item {item_id}", Decimal(str(quantity))),
        )

    return _seed


@pytest.fixture
def seed_invoice() -> Callable[..., None]:
    """Register an invoice row in the context's workbook."""

    def _seed(
        context: core_logic.RuntimeContext,
        invoice_id: str = DEFAULT_INVOICE_ID,
        *,
        party_id: Optional[str] = DEFAULT_PARTY_ID,
        invoice_type: str = "sale",
        total: str = "1000.00",
    ) -> None:
        context.workbook[data_manager.INVOICES_SHEET].append(
            data_manager.serialize_invoice(
                data_manager.InvoiceRow(invoice_id, invoice_type, party_id, "2024-01-01", Decimal(total))
            )
        )
        core_logic._invalidate_cache(context, "invoices")

    return _seed


@pytest.fixture
def draft_return(seed_invoice: Callable[..., None]) -> Callable[..., core_logic.ReturnDocument]:
    """Create a draft return through the public creation path.

    ``lines`` are ``(item_type, item_id, quantity, unit_price)`` tuples.
    """

    def _create(
        context: core_logic.RuntimeContext,
        lines: Sequence[tuple[constants.ItemType, str, str, str]],
        *,
        return_type: constants.ReturnType = constants.ReturnType.SALES_RETURN,
        party_id: Optional[str] = DEFAULT_PARTY_ID,
        invoice_id: str = DEFAULT_INVOICE_ID,
        date_iso: str = "2024-02-01",
    ) -> core_logic.ReturnDocument:
        if not core_logic.invoice_exists(context, invoice_id):
            seed_invoice(context, invoice_id, party_id=party_id)
        form = ReturnForm(
            return_type=return_type.value,
            invoice_id=invoice_id,
            party_id=party_id,
            date_iso=date_iso,
            items=tuple(
                ReturnFormItem(
                    item_id=item_id,
                    item_type=constants.ItemType(item_type).value,
                    quantity=Decimal(quantity),
                    unit_price=Decimal(unit_price),
                )
                for item_type, item_id, quantity, unit_price in lines
            ),
        )
        return processing.create_return(context, form)

    return _create


# ---------------------------------------------------------------------------
# CLI layer fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def cli_parser() -> argparse.ArgumentParser:
    """Bare top-level parser for the returns CLI."""

    return argparse.ArgumentParser(prog="returns-cli", description="Returns CLI")


@pytest.fixture
def subparsers_action(
    cli_parser: argparse.ArgumentParser,
) -> argparse._SubParsersAction[argparse.ArgumentParser]:
    """Subparser action the register_* helpers attach to."""

    return cli_parser.add_subparsers(dest="command")


@pytest.fixture
def command_spec_iterable() -> list[cli.CommandSpec]:
    """Three no-op command specs for command table tests."""

    def _make_spec(name: str) -> cli.CommandSpec:
        return cli.CommandSpec(
            name,
            f"{name} help",
            lambda subparsers: subparsers.add_parser(name),
            lambda *_: 0,
        )

    return [_make_spec("alpha"), _make_spec("beta"), _make_spec("gamma")]


# ---------------------------------------------------------------------------
# Core logic fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def workbook() -> Mock:
    """Stand-in workbook for tests that never touch real sheets."""

    return Mock(name="workbook")


@pytest.fixture
def context(settings: data_manager.ConfigSettings, workbook: Mock) -> core_logic.RuntimeContext:
    """Runtime context whose workbook is a Mock, for tests that patch the DAL."""

    return core_logic.RuntimeContext(settings=settings, workbook=workbook)


@pytest.fixture
def set_fixed_datetime(monkeypatch: pytest.MonkeyPatch) -> Callable[[datetime], datetime]:
    """Freeze the clock used for ids, timestamps and ``today_iso``."""

    def _apply(moment: datetime) -> datetime:
        class _FixedDateTime:
            @staticmethod
            def now(tz=None):
                assert tz is UTC
                return moment

        monkeypatch.setattr(core_logic, "datetime", _FixedDateTime)
        return moment

    return _apply

"""Unit tests documenting the expected behavior of the data access layer."""

from __future__ import annotations

import configparser
from decimal import Decimal
from pathlib import Path

import openpyxl
from openpyxl.workbook import Workbook as OpenpyxlWorkbook
import pytest

from returns_engine import constants, data_manager  # noqa: E402
from returns_engine.setup_excel import build_master_workbook


def _return_row(return_id: str = "R1", *, status: str = "draft", version: int = 1) -> data_manager.ReturnRow:
    return data_manager.ReturnRow(
        return_id=return_id,
        return_type=constants.ReturnType.SALES_RETURN.value,
        invoice_id="INV-1",
        party_id="C-1",
        date_iso="2024-02-01",
        amount=Decimal("50.00"),
        status=status,
        version=version,
        notes=None,
        created_at="2024-02-01T10:00:00+00:00",
    )


def _item_row(return_id: str, line_no: int, item_id: str = "RM-1") -> data_manager.ReturnItemRow:
    return data_manager.ReturnItemRow(
        return_id=return_id,
        line_no=line_no,
        item_id=item_id,
        item_type=constants.ItemType.RAW_MATERIALS.value,
        item_name="Flour",
        quantity=Decimal("5"),
        unit_price=Decimal("10.00"),
        total=Decimal("50.00"),
    )


@pytest.fixture
def memory_workbook() -> OpenpyxlWorkbook:
    return build_master_workbook()


@pytest.fixture
def master_workbook_path(workbook_factory) -> Path:
    return workbook_factory(subdir="dal")


def test_find_config_file_respects_explicit_path(config_file: Path):
    """Supplying an explicit path should be treated as the winning answer."""

    result = data_manager.find_config_file(config_file)
    assert result == config_file


def test_find_config_file_discovers_in_cwd(tmp_path, monkeypatch):
    """Auto-discovery should locate config.ini in the working directory tree."""

    config_dir = tmp_path / "nested"
    config_dir.mkdir(parents=True)
    config_file = config_dir / "config.ini"
    config_file.write_text("[System]\nDataFile=master_workbook.xlsx")
    monkeypatch.chdir(config_dir)

    result = data_manager.find_config_file()
    assert result == config_file


def test_find_config_file_raises_when_missing(tmp_path, monkeypatch):
    """Absent configuration should surface a clear FileNotFoundError."""

    monkeypatch.chdir(tmp_path)
    with pytest.raises(FileNotFoundError):
        data_manager.find_config_file()


def test_read_config_loads_sections(config_file: Path):
    """read_config should return a populated ConfigParser."""

    parser = data_manager.read_config(config_file)
    assert parser.get("System", "CompanyName") == "Test Co"
    assert parser.get("System", "SchemaVersion") == constants.EXPECTED_SCHEMA_VERSION


def test_read_config_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.read_config(tmp_path / "not_there.ini")


def test_parse_settings_resolves_relative_paths(config_factory):
    """Relative DataFile entries should be anchored to the config location."""

    parser = configparser.ConfigParser()
    bundle = config_factory(make_relative=True)
    parser.read(bundle.config_path)
    settings = data_manager.parse_settings(parser, base_path=bundle.config_path.parent)
    assert settings.data_file == (bundle.config_path.parent / bundle.workbook_path.name).resolve()
    assert settings.company_name == "Test Co"


def test_parse_settings_requires_expected_sections(tmp_path):
    parser = configparser.ConfigParser()
    parser.read_string("[Other]\nvalue=1")
    with pytest.raises(KeyError):
        data_manager.parse_settings(parser, base_path=tmp_path)


def test_open_workbook_returns_openpyxl_instance(master_workbook_path):
    workbook = data_manager.open_workbook(master_workbook_path)
    assert isinstance(workbook, OpenpyxlWorkbook)
    assert data_manager.missing_sheets(workbook) == []


def test_open_workbook_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        data_manager.open_workbook(tmp_path / "missing.xlsx")


def test_save_workbook_with_destination_creates_copy(master_workbook_path, tmp_path):
    """Providing a destination should create a new file independent of the source."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_return(workbook, _return_row("R-COPY"))
    copy_path = tmp_path / "nested" / "copy.xlsx"
    data_manager.save_workbook(workbook, destination=copy_path)

    copy = openpyxl.load_workbook(copy_path)
    rows = list(copy[constants.SheetName.RETURNS.value].iter_rows(min_row=2, values_only=True))
    assert rows[0][0] == "R-COPY"


def test_returns_survive_save_and_reload(master_workbook_path):
    """Decimal amounts and versions should read back as Decimal and int."""

    workbook = data_manager.open_workbook(master_workbook_path)
    data_manager.append_return(workbook, _return_row("R1"))
    data_manager.append_return_item(workbook, _item_row("R1", 1))
    data_manager.save_workbook(workbook, master_workbook_path)

    refreshed = data_manager.refresh_workbook(master_workbook_path)
    header = data_manager.get_return(refreshed, "R1")
    items = list(data_manager.iter_return_items(refreshed, "R1"))

    assert header.amount == Decimal("50")
    assert header.version == 1
    assert header.status == "draft"
    assert [item.quantity for item in items] == [Decimal("5")]


def test_append_return_rejects_duplicate_ids(memory_workbook):
    data_manager.append_return(memory_workbook, _return_row("R1"))
    with pytest.raises(ValueError):
        data_manager.append_return(memory_workbook, _return_row("R1"))


def test_get_return_missing_returns_none(memory_workbook):
    assert data_manager.get_return(memory_workbook, "NOPE") is None


def test_locate_row_matches_numeric_cells_as_text(memory_workbook):
    """Identifiers stored as numbers should still match their string form."""

    memory_workbook[data_manager.RETURNS_SHEET].append([1001, "sales_return", None, None, "2024-01-01", 1, "draft", 1, None, ""])

    assert data_manager.locate_row(memory_workbook, data_manager.RETURNS_SHEET, "ReturnID", "1001") == 2


def test_locate_row_unknown_column_raises(memory_workbook):
    with pytest.raises(KeyError):
        data_manager.locate_row(memory_workbook, data_manager.RETURNS_SHEET, "Nope", "x")


def test_update_return_status_bumps_version(memory_workbook):
    data_manager.append_return(memory_workbook, _return_row("R1"))

    updated = data_manager.update_return_status(
        memory_workbook,
        "R1",
        expected_status="draft",
        new_status="confirmed",
        expected_version=1,
    )

    assert updated.status == "confirmed"
    assert updated.version == 2
    assert data_manager.get_return(memory_workbook, "R1") == updated


def test_update_return_status_rejects_stale_status(memory_workbook):
    data_manager.append_return(memory_workbook, _return_row("R1", status="confirmed", version=2))

    with pytest.raises(data_manager.StaleRecordError):
        data_manager.update_return_status(
            memory_workbook, "R1", expected_status="draft", new_status="confirmed"
        )

    assert data_manager.get_return(memory_workbook, "R1").version == 2


def test_update_return_status_rejects_stale_version(memory_workbook):
    data_manager.append_return(memory_workbook, _return_row("R1", version=3))

    with pytest.raises(data_manager.StaleRecordError):
        data_manager.update_return_status(
            memory_workbook, "R1", expected_status="draft", new_status="confirmed", expected_version=1
        )


def test_update_return_status_missing_raises(memory_workbook):
    with pytest.raises(KeyError):
        data_manager.update_return_status(memory_workbook, "NOPE", expected_status="draft", new_status="confirmed")


def test_update_return_fields_refuses_status_columns(memory_workbook):
    data_manager.append_return(memory_workbook, _return_row("R1"))

    with pytest.raises(KeyError):
        data_manager.update_return_fields(memory_workbook, "R1", field_values={"Status": "confirmed"})

    data_manager.update_return_fields(memory_workbook, "R1", field_values={"Notes": "damaged box"})
    assert data_manager.get_return(memory_workbook, "R1").notes == "damaged box"


def test_delete_return_removes_header_and_items_only_for_that_return(memory_workbook):
    data_manager.append_return(memory_workbook, _return_row("R1"))
    data_manager.append_return(memory_workbook, _return_row("R2"))
    data_manager.append_return_item(memory_workbook, _item_row("R1", 1))
    data_manager.append_return_item(memory_workbook, _item_row("R2", 1))
    data_manager.append_return_item(memory_workbook, _item_row("R1", 2, item_id="RM-2"))

    removed = data_manager.delete_return(memory_workbook, "R1")

    assert removed == 2
    assert data_manager.get_return(memory_workbook, "R1") is None
    assert [row.return_id for row in data_manager.iter_returns(memory_workbook)] == ["R2"]
    assert [row.return_id for row in data_manager.iter_return_items(memory_workbook)] == ["R2"]


def test_iter_return_items_orders_by_line_number(memory_workbook):
    data_manager.append_return_item(memory_workbook, _item_row("R1", 2, item_id="B"))
    data_manager.append_return_item(memory_workbook, _item_row("R1", 1, item_id="A"))

    items = list(data_manager.iter_return_items(memory_workbook, "R1"))

    assert [item.item_id for item in items] == ["A", "B"]


def test_set_item_quantity_compare_and_swap(memory_workbook):
    item_type = constants.ItemType.PACKAGING_MATERIALS
    data_manager.append_inventory_item(memory_workbook, item_type, data_manager.InventoryRow("PK-1", "Box", Decimal("10")))

    data_manager.set_item_quantity(memory_workbook, item_type, "PK-1", Decimal("7"), expected=Decimal("10"))
    assert data_manager.get_item_quantity(memory_workbook, item_type, "PK-1") == Decimal("7")

    with pytest.raises(data_manager.StaleRecordError):
        data_manager.set_item_quantity(memory_workbook, item_type, "PK-1", Decimal("1"), expected=Decimal("10"))
    assert data_manager.get_item_quantity(memory_workbook, item_type, "PK-1") == Decimal("7")


def test_set_item_quantity_rejects_negative_values(memory_workbook):
    item_type = constants.ItemType.RAW_MATERIALS
    data_manager.append_inventory_item(memory_workbook, item_type, data_manager.InventoryRow("RM-1", "Flour", Decimal("1")))

    with pytest.raises(ValueError):
        data_manager.set_item_quantity(memory_workbook, item_type, "RM-1", Decimal("-1"))


def test_inventory_categories_are_independent(memory_workbook):
    """The same item id may exist in several categories without interference."""

    data_manager.append_inventory_item(
        memory_workbook, constants.ItemType.RAW_MATERIALS, data_manager.InventoryRow("X", "Raw", Decimal("1"))
    )
    data_manager.append_inventory_item(
        memory_workbook, constants.ItemType.FINISHED_PRODUCTS, data_manager.InventoryRow("X", "Finished", Decimal("9"))
    )

    assert data_manager.get_item_quantity(memory_workbook, constants.ItemType.RAW_MATERIALS, "X") == Decimal("1")
    assert data_manager.get_item_quantity(memory_workbook, constants.ItemType.FINISHED_PRODUCTS, "X") == Decimal("9")


def test_get_item_quantity_missing_raises(memory_workbook):
    with pytest.raises(KeyError):
        data_manager.get_item_quantity(memory_workbook, constants.ItemType.RAW_MATERIALS, "NOPE")


def test_upsert_party_balance_creates_then_updates(memory_workbook):
    data_manager.upsert_party_balance(memory_workbook, data_manager.PartyBalanceRow("C-1", Decimal("5.00"), "t1"))
    data_manager.upsert_party_balance(memory_workbook, data_manager.PartyBalanceRow("C-1", Decimal("-3.00"), "t2"))

    rows = list(data_manager.iter_party_balances(memory_workbook))

    assert rows == [data_manager.PartyBalanceRow("C-1", Decimal("-3.00"), "t2")]


def test_iter_ledger_entries_filters_by_party(memory_workbook):
    for entry_id, party in (("L1", "A"), ("L2", "B"), ("L3", "A")):
        data_manager.append_ledger_entry(
            memory_workbook,
            data_manager.LedgerEntryRow(entry_id, party, "R1", "sales_return", "2024-01-01", Decimal("0"), Decimal("1"), Decimal("-1"), None),
        )

    assert [entry.entry_id for entry in data_manager.iter_ledger_entries(memory_workbook, "A")] == ["L1", "L3"]


def test_serialize_ledger_entry_preserves_order():
    record = data_manager.LedgerEntryRow(
        "L1", "C-1", "R1", "purchase_return", "2024-01-01", Decimal("10.00"), Decimal("0.00"), Decimal("10.00"), "n"
    )
    assert data_manager.serialize_ledger_entry(record) == [
        "L1",
        "C-1",
        "R1",
        "purchase_return",
        "2024-01-01",
        Decimal("10.00"),
        Decimal("0.00"),
        Decimal("10.00"),
        "n",
    ]


def test_deserialize_ledger_entry_treats_blank_amounts_as_zero():
    record = data_manager.deserialize_ledger_entry(["L1", 42, "R1", "sales_return", "2024-01-01", None, "5", None, ""])

    assert record.party_id == "42"
    assert record.debit == Decimal("0.00")
    assert record.credit == Decimal("5")
    assert record.notes is None


def test_deserialize_return_item_computes_missing_total():
    record = data_manager.deserialize_return_item(["R1", 1, "RM-1", "raw_materials", None, 3, "2.50", None])

    assert record.total == Decimal("7.50")
    assert record.item_name == ""

"""Data access layer for the returns engine.

This module provides low-level helpers that read from and write to the
master workbook. Business logic belongs elsewhere.

The public API is designed around three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, validating, and persisting the Excel file.
3. Sheet operations: loading structured records, appending rows, and
   performing the conditional (compare-and-swap) updates the processing
   layer relies on for concurrency control.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass, replace
from decimal import Decimal
from pathlib import Path
from typing import Any, Iterable, Iterator, List, Optional, Sequence

from openpyxl.workbook import Workbook
from openpyxl.worksheet.worksheet import Worksheet
import openpyxl

from . import log
from .constants import INVENTORY_SHEETS, SHEET_COLUMNS, ItemType, SheetName


CONFIG_FILE_NAME = "config.ini"
RETURNS_SHEET = SheetName.RETURNS.value
RETURN_ITEMS_SHEET = SheetName.RETURN_ITEMS.value
MOVEMENTS_SHEET = SheetName.INVENTORY_MOVEMENTS.value
LEDGER_SHEET = SheetName.LEDGER.value
PARTY_BALANCES_SHEET = SheetName.PARTY_BALANCES.value
INVOICES_SHEET = SheetName.INVOICES.value


class StaleRecordError(RuntimeError):
    """Raised when a conditional update observes a value other than expected."""


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    company_name: str
    schema_version: str


@dataclass(frozen=True)
class ReturnRow:
    """In-memory view of a row from the ``Returns`` sheet."""

    return_id: str
    return_type: str
    invoice_id: Optional[str]
    party_id: Optional[str]
    date_iso: str
    amount: Decimal
    status: str
    version: int
    notes: Optional[str]
    created_at: str


@dataclass(frozen=True)
class ReturnItemRow:
    """In-memory view of a row from the ``ReturnItems`` sheet."""

    return_id: str
    line_no: int
    item_id: str
    item_type: str
    item_name: str
    quantity: Decimal
    unit_price: Decimal
    total: Decimal


@dataclass(frozen=True)
class InventoryRow:
    """In-memory view of a row from one of the four inventory sheets."""

    item_id: str
    item_name: str
    quantity: Decimal


@dataclass(frozen=True)
class MovementRow:
    """In-memory view of a row from the ``InventoryMovements`` sheet."""

    movement_id: str
    timestamp_iso: str
    item_id: str
    item_type: str
    direction: str
    quantity: Decimal
    balance_after: Decimal
    reason: str


@dataclass(frozen=True)
class LedgerEntryRow:
    """In-memory view of a row from the ``Ledger`` sheet."""

    entry_id: str
    party_id: str
    transaction_id: str
    transaction_type: str
    date_iso: str
    debit: Decimal
    credit: Decimal
    balance_after: Decimal
    notes: Optional[str]


@dataclass(frozen=True)
class PartyBalanceRow:
    """In-memory view of a row from the ``PartyBalances`` sheet."""

    party_id: str
    balance: Decimal
    last_updated: str


@dataclass(frozen=True)
class InvoiceRow:
    """In-memory view of a row from the ``Invoices`` sheet."""

    invoice_id: str
    invoice_type: str
    party_id: Optional[str]
    date_iso: str
    total_amount: Decimal


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    If the caller provides ``explicit_path`` the value is returned immediately
    without any verification, which allows the caller to deliberately target a
    non-standard location. When no explicit path is given the function walks up
    from the current working directory toward the filesystem root looking for a
    file named ``CONFIG_FILE_NAME``. The first match that exists on disk is
    considered authoritative.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search. May be relative to the current working directory.

    Returns:
        Path: The path provided by the caller or the discovered configuration
            file.

    Raises:
        FileNotFoundError: If the search exhausts all parent directories without
            finding ``CONFIG_FILE_NAME``.
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
            absolute. ``~`` is expanded before the existence check.

    Returns:
        configparser.ConfigParser: Initialized parser containing the raw
            configuration data. Required entries are validated later by
            :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist after expansion and
            resolution.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path)
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` paths are expanded against ``base_path`` when
    provided, or against the current working directory as a fallback.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Directory to use as the anchor for relative
            ``DataFile`` entries.

    Returns:
        ConfigSettings: Immutable settings container with resolved data file
            path, company name, and schema version.

    Raises:
        KeyError: If one of the required sections or options is missing from the
            configuration.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        company_name = parser.get("System", "CompanyName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        company_name=company_name,
        schema_version=schema_version,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master Excel workbook and return a live ``openpyxl`` workbook.

    Args:
        data_file (Path): Filesystem path to the master workbook.

    Returns:
        Workbook: ``openpyxl`` workbook instance backed by the provided file.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist after expansion and
            resolution.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook to disk, creating parent directories on demand."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding any unsaved in-memory changes."""

    return open_workbook(data_file)


def missing_sheets(workbook: Workbook) -> List[str]:
    """Return the managed sheet names absent from ``workbook``."""

    return [sheet.value for sheet in SHEET_COLUMNS if sheet.value not in workbook.sheetnames]


# ---------------------------------------------------------------------------
# Generic sheet helpers
# ---------------------------------------------------------------------------


def _sheet(workbook: Workbook, sheet_name: str) -> Worksheet:
    return workbook[sheet_name]


def _width(sheet_name: str) -> int:
    return len(SHEET_COLUMNS[SheetName(sheet_name)])


def _header_map(sheet: Worksheet) -> dict[Any, int]:
    return {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}


def _iter_raw_rows(workbook: Workbook, sheet_name: str) -> Iterator[tuple[int, Sequence[object]]]:
    """Yield ``(row_index, values)`` pairs for every non-empty data row."""

    sheet = _sheet(workbook, sheet_name)
    width = _width(sheet_name)
    for row_idx, raw in enumerate(
        sheet.iter_rows(min_row=2, max_col=width, values_only=True), start=2
    ):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield row_idx, raw


def _read_row(workbook: Workbook, sheet_name: str, row_index: int) -> Sequence[object]:
    sheet = _sheet(workbook, sheet_name)
    width = _width(sheet_name)
    rows = sheet.iter_rows(min_row=row_index, max_row=row_index, max_col=width, values_only=True)
    return next(rows)


def _write_fields(workbook: Workbook, sheet_name: str, row_index: int, field_values: dict[str, Any]) -> None:
    sheet = _sheet(workbook, sheet_name)
    header_map = _header_map(sheet)
    for field, value in field_values.items():
        if field not in header_map:
            raise KeyError(f"Unknown {sheet_name} field: {field}")
        sheet.cell(row=row_index, column=header_map[field], value=value)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> Optional[int]:
    """Find a row by matching a key value within the specified worksheet.

    Key cells are compared as text so that identifiers Excel stored as
    numbers still match their string form.

    Args:
        workbook (Workbook): Workbook providing access to ``sheet_name``.
        sheet_name (str): Name of the worksheet to search.
        key_column (str): Header title identifying the lookup column.
        key_value (str): Value to match within the key column.

    Returns:
        int | None: 1-based Excel row index of the first match, otherwise
            ``None``.

    Raises:
        KeyError: If ``key_column`` is not present in the worksheet header.
    """

    matches = locate_rows(workbook, sheet_name, key_column, key_value)
    return matches[0] if matches else None


def locate_rows(workbook: Workbook, sheet_name: str, key_column: str, key_value: str) -> List[int]:
    """Return every 1-based row index whose ``key_column`` equals ``key_value``."""

    sheet = _sheet(workbook, sheet_name)
    header_map = _header_map(sheet)
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    target = str(key_value)
    return [
        row_idx
        for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2)
        if row[key_col_index - 1] is not None and str(row[key_col_index - 1]) == target
    ]


def _to_decimal(raw: object, default: str = "0") -> Decimal:
    return Decimal(str(raw)) if raw is not None else Decimal(default)


def _optional_str(raw: object) -> Optional[str]:
    return str(raw) if raw is not None and str(raw) != "" else None


# ---------------------------------------------------------------------------
# Returns
# ---------------------------------------------------------------------------


def iter_returns(workbook: Workbook) -> Iterable[ReturnRow]:
    """Iterate over return headers stored on the ``Returns`` worksheet.

    Args:
        workbook (Workbook): Workbook containing the ``Returns`` sheet.

    Yields:
        ReturnRow: One structured row for each populated record, in sheet
            order.
    """

    for _, raw in _iter_raw_rows(workbook, RETURNS_SHEET):
        yield deserialize_return(raw)


def get_return(workbook: Workbook, return_id: str) -> Optional[ReturnRow]:
    """Return the header row for ``return_id`` or ``None`` when absent."""

    row_index = locate_row(workbook, RETURNS_SHEET, "ReturnID", return_id)
    if row_index is None:
        return None
    return deserialize_return(_read_row(workbook, RETURNS_SHEET, row_index))


def append_return(workbook: Workbook, record: ReturnRow) -> None:
    """Append a return header to the ``Returns`` worksheet.

    Raises:
        ValueError: If a return with the same identifier already exists.
    """

    if locate_row(workbook, RETURNS_SHEET, "ReturnID", record.return_id) is not None:
        raise ValueError(f"Duplicate return id: {record.return_id}")
    _sheet(workbook, RETURNS_SHEET).append(serialize_return(record))


def update_return_fields(workbook: Workbook, return_id: str, *, field_values: dict[str, Any]) -> None:
    """Update selected columns for an existing return header.

    Only the specified columns are modified. Status changes must go through
    :func:`update_return_status` so the version counter stays authoritative.

    Raises:
        KeyError: If the return or any referenced column cannot be found, or
            if ``field_values`` attempts to touch ``Status``/``Version``.
    """

    if {"Status", "Version"} & set(field_values):
        raise KeyError("Status and Version are only writable via update_return_status")
    row_index = locate_row(workbook, RETURNS_SHEET, "ReturnID", return_id)
    if row_index is None:
        raise KeyError(f"Return not found: {return_id}")
    _write_fields(workbook, RETURNS_SHEET, row_index, field_values)


def update_return_status(
    workbook: Workbook,
    return_id: str,
    *,
    expected_status: str,
    new_status: str,
    expected_version: Optional[int] = None,
) -> ReturnRow:
    """Conditionally move a return to ``new_status``.

    The write only happens when the stored status still equals
    ``expected_status`` and, when supplied, the stored version equals
    ``expected_version``. Every successful write increments ``Version`` so a
    caller holding an older snapshot can never overwrite a newer transition.

    Args:
        workbook (Workbook): Workbook containing the returns sheet.
        return_id (str): Identifier of the return to update.
        expected_status (str): Status the caller observed before deciding to
            transition.
        new_status (str): Status to store.
        expected_version (int | None): Version the caller observed. ``None``
            skips the version comparison.

    Returns:
        ReturnRow: The header as stored after the update.

    Raises:
        KeyError: If ``return_id`` is unknown.
        StaleRecordError: If the stored status or version differs from the
            expected values.
    """

    row_index = locate_row(workbook, RETURNS_SHEET, "ReturnID", return_id)
    if row_index is None:
        raise KeyError(f"Return not found: {return_id}")

    current = deserialize_return(_read_row(workbook, RETURNS_SHEET, row_index))
    if current.status != expected_status or (
        expected_version is not None and current.version != expected_version
    ):
        log.warning(
            "Stale status write on return '%s': expected %s@v%s, found %s@v%s",
            return_id,
            expected_status,
            expected_version,
            current.status,
            current.version,
        )
        raise StaleRecordError(
            f"Return {return_id} is '{current.status}' (v{current.version}), "
            f"expected '{expected_status}'"
        )

    updated = replace(current, status=new_status, version=current.version + 1)
    _write_fields(
        workbook,
        RETURNS_SHEET,
        row_index,
        {"Status": updated.status, "Version": updated.version},
    )
    return updated


def delete_return(workbook: Workbook, return_id: str) -> int:
    """Remove a return header and all of its item lines.

    Returns:
        int: Number of item lines removed alongside the header.

    Raises:
        KeyError: If ``return_id`` is unknown.
    """

    header_index = locate_row(workbook, RETURNS_SHEET, "ReturnID", return_id)
    if header_index is None:
        raise KeyError(f"Return not found: {return_id}")

    item_rows = locate_rows(workbook, RETURN_ITEMS_SHEET, "ReturnID", return_id)
    items_sheet = _sheet(workbook, RETURN_ITEMS_SHEET)
    # delete bottom-up so earlier indices stay valid
    for row_idx in sorted(item_rows, reverse=True):
        items_sheet.delete_rows(row_idx)
    _sheet(workbook, RETURNS_SHEET).delete_rows(header_index)
    return len(item_rows)


def iter_return_items(workbook: Workbook, return_id: Optional[str] = None) -> Iterable[ReturnItemRow]:
    """Iterate over return item lines, optionally restricted to one return.

    Lines are yielded ordered by ``line_no`` when ``return_id`` is given, and
    in sheet order otherwise.
    """

    rows = (deserialize_return_item(raw) for _, raw in _iter_raw_rows(workbook, RETURN_ITEMS_SHEET))
    if return_id is None:
        yield from rows
        return
    yield from sorted((row for row in rows if row.return_id == str(return_id)), key=lambda row: row.line_no)


def append_return_item(workbook: Workbook, record: ReturnItemRow) -> None:
    """Append a return item line to the ``ReturnItems`` worksheet."""

    _sheet(workbook, RETURN_ITEMS_SHEET).append(serialize_return_item(record))


# ---------------------------------------------------------------------------
# Inventory
# ---------------------------------------------------------------------------


def inventory_sheet_name(item_type: ItemType | str) -> str:
    """Map an item category onto the worksheet that stores it.

    Raises:
        ValueError: If ``item_type`` is not one of the four categories.
    """

    return INVENTORY_SHEETS[ItemType(item_type)].value


def iter_inventory(workbook: Workbook, item_type: ItemType | str) -> Iterable[InventoryRow]:
    """Iterate over the stock rows of a single inventory category."""

    for _, raw in _iter_raw_rows(workbook, inventory_sheet_name(item_type)):
        yield deserialize_inventory(raw)


def append_inventory_item(workbook: Workbook, item_type: ItemType | str, record: InventoryRow) -> None:
    """Register a stock row for ``item_type``.

    Raises:
        ValueError: If the item already exists or the quantity is negative.
    """

    sheet_name = inventory_sheet_name(item_type)
    if locate_row(workbook, sheet_name, "ItemID", record.item_id) is not None:
        raise ValueError(f"Duplicate {ItemType(item_type).value} item: {record.item_id}")
    if record.quantity < Decimal("0"):
        raise ValueError("Inventory quantity cannot be negative")
    _sheet(workbook, sheet_name).append(serialize_inventory(record))


def get_inventory_item(workbook: Workbook, item_type: ItemType | str, item_id: str) -> Optional[InventoryRow]:
    """Return the stock row for ``(item_type, item_id)`` or ``None``."""

    sheet_name = inventory_sheet_name(item_type)
    row_index = locate_row(workbook, sheet_name, "ItemID", item_id)
    if row_index is None:
        return None
    return deserialize_inventory(_read_row(workbook, sheet_name, row_index))


def get_item_quantity(workbook: Workbook, item_type: ItemType | str, item_id: str) -> Decimal:
    """Read the current on-hand quantity for ``(item_type, item_id)``.

    Raises:
        KeyError: If the item does not exist in its category sheet.
    """

    row = get_inventory_item(workbook, item_type, item_id)
    if row is None:
        raise KeyError(f"Inventory item not found: {ItemType(item_type).value}/{item_id}")
    return row.quantity


def set_item_quantity(
    workbook: Workbook,
    item_type: ItemType | str,
    item_id: str,
    quantity: Decimal,
    *,
    expected: Optional[Decimal] = None,
) -> None:
    """Write a new on-hand quantity, optionally as a compare-and-swap.

    Args:
        workbook (Workbook): Workbook containing the inventory sheets.
        item_type (ItemType | str): Category of the item.
        item_id (str): Identifier of the item within its category.
        quantity (Decimal): Value to store. Must be non-negative.
        expected (Decimal | None): When provided, the write only succeeds if
            the stored quantity still equals this value.

    Raises:
        KeyError: If the item does not exist.
        ValueError: If ``quantity`` is negative.
        StaleRecordError: If the stored quantity differs from ``expected``.
    """

    if quantity < Decimal("0"):
        raise ValueError("Inventory quantity cannot be negative")

    sheet_name = inventory_sheet_name(item_type)
    row_index = locate_row(workbook, sheet_name, "ItemID", item_id)
    if row_index is None:
        raise KeyError(f"Inventory item not found: {ItemType(item_type).value}/{item_id}")

    if expected is not None:
        current = deserialize_inventory(_read_row(workbook, sheet_name, row_index)).quantity
        if current != expected:
            raise StaleRecordError(
                f"Quantity of {ItemType(item_type).value}/{item_id} changed: "
                f"expected {expected}, found {current}"
            )

    _write_fields(workbook, sheet_name, row_index, {"Quantity": quantity})


# ---------------------------------------------------------------------------
# Movements, ledger, balances, invoices
# ---------------------------------------------------------------------------


def append_movement(workbook: Workbook, record: MovementRow) -> None:
    """Append an immutable movement record to ``InventoryMovements``."""

    _sheet(workbook, MOVEMENTS_SHEET).append(serialize_movement(record))


def iter_movements(workbook: Workbook) -> Iterable[MovementRow]:
    """Stream movement records in insertion order."""

    for _, raw in _iter_raw_rows(workbook, MOVEMENTS_SHEET):
        yield deserialize_movement(raw)


def append_ledger_entry(workbook: Workbook, record: LedgerEntryRow) -> None:
    """Append an immutable entry to the ``Ledger`` worksheet."""

    _sheet(workbook, LEDGER_SHEET).append(serialize_ledger_entry(record))


def iter_ledger_entries(workbook: Workbook, party_id: Optional[str] = None) -> Iterable[LedgerEntryRow]:
    """Stream ledger entries in insertion order, optionally for one party."""

    for _, raw in _iter_raw_rows(workbook, LEDGER_SHEET):
        entry = deserialize_ledger_entry(raw)
        if party_id is None or entry.party_id == str(party_id):
            yield entry


def iter_party_balances(workbook: Workbook) -> Iterable[PartyBalanceRow]:
    """Stream the cached balance rows."""

    for _, raw in _iter_raw_rows(workbook, PARTY_BALANCES_SHEET):
        yield deserialize_party_balance(raw)


def get_party_balance(workbook: Workbook, party_id: str) -> Optional[PartyBalanceRow]:
    """Return the cached balance row for ``party_id`` or ``None``."""

    row_index = locate_row(workbook, PARTY_BALANCES_SHEET, "PartyID", party_id)
    if row_index is None:
        return None
    return deserialize_party_balance(_read_row(workbook, PARTY_BALANCES_SHEET, row_index))


def upsert_party_balance(workbook: Workbook, record: PartyBalanceRow) -> None:
    """Create the cached balance row on first use, or overwrite it."""

    row_index = locate_row(workbook, PARTY_BALANCES_SHEET, "PartyID", record.party_id)
    if row_index is None:
        _sheet(workbook, PARTY_BALANCES_SHEET).append(serialize_party_balance(record))
        return
    _write_fields(
        workbook,
        PARTY_BALANCES_SHEET,
        row_index,
        {"Balance": record.balance, "LastUpdated": record.last_updated},
    )


def iter_invoices(workbook: Workbook) -> Iterable[InvoiceRow]:
    """Stream invoice headers from the read-only ``Invoices`` worksheet."""

    for _, raw in _iter_raw_rows(workbook, INVOICES_SHEET):
        yield deserialize_invoice(raw)


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------


def serialize_return(record: ReturnRow) -> list[object]:
    """Convert a return header into the ``Returns`` column ordering."""

    return [
        record.return_id,
        record.return_type,
        record.invoice_id,
        record.party_id,
        record.date_iso,
        record.amount,
        record.status,
        record.version,
        record.notes,
        record.created_at,
    ]


def serialize_return_item(record: ReturnItemRow) -> list[object]:
    return [
        record.return_id,
        record.line_no,
        record.item_id,
        record.item_type,
        record.item_name,
        record.quantity,
        record.unit_price,
        record.total,
    ]


def serialize_inventory(record: InventoryRow) -> list[object]:
    return [record.item_id, record.item_name, record.quantity]


def serialize_movement(record: MovementRow) -> list[object]:
    return [
        record.movement_id,
        record.timestamp_iso,
        record.item_id,
        record.item_type,
        record.direction,
        record.quantity,
        record.balance_after,
        record.reason,
    ]


def serialize_ledger_entry(record: LedgerEntryRow) -> list[object]:
    """Convert a ledger entry into the ``Ledger`` column ordering.

    Monetary fields remain :class:`~decimal.Decimal` instances so Excel keeps
    their precision when the workbook is saved.
    """

    return [
        record.entry_id,
        record.party_id,
        record.transaction_id,
        record.transaction_type,
        record.date_iso,
        record.debit,
        record.credit,
        record.balance_after,
        record.notes,
    ]


def serialize_party_balance(record: PartyBalanceRow) -> list[object]:
    return [record.party_id, record.balance, record.last_updated]


def serialize_invoice(record: InvoiceRow) -> list[object]:
    return [record.invoice_id, record.invoice_type, record.party_id, record.date_iso, record.total_amount]


def deserialize_return(raw_row: Sequence[object]) -> ReturnRow:
    """Convert a raw worksheet row into a strongly typed return header.

    Identifiers are coerced to ``str`` to avoid surprises caused by Excel
    interpreting numeric-looking ids, the amount becomes a
    :class:`~decimal.Decimal`, and a missing version defaults to ``1``.
    """

    (
        return_id,
        return_type,
        invoice_id,
        party_id,
        date_iso,
        amount_raw,
        status,
        version_raw,
        notes,
        created_at,
    ) = raw_row

    return ReturnRow(
        return_id=str(return_id),
        return_type=str(return_type) if return_type is not None else "",
        invoice_id=_optional_str(invoice_id),
        party_id=_optional_str(party_id),
        date_iso=str(date_iso) if date_iso is not None else "",
        amount=_to_decimal(amount_raw, "0.00"),
        status=str(status) if status is not None else "",
        version=int(version_raw) if version_raw is not None else 1,
        notes=_optional_str(notes),
        created_at=str(created_at) if created_at is not None else "",
    )


def deserialize_return_item(raw_row: Sequence[object]) -> ReturnItemRow:
    (
        return_id,
        line_no,
        item_id,
        item_type,
        item_name,
        quantity_raw,
        unit_price_raw,
        total_raw,
    ) = raw_row

    quantity = _to_decimal(quantity_raw)
    unit_price = _to_decimal(unit_price_raw, "0.00")
    total = _to_decimal(total_raw) if total_raw is not None else quantity * unit_price
    return ReturnItemRow(
        return_id=str(return_id),
        line_no=int(line_no) if line_no is not None else 0,
        item_id=str(item_id) if item_id is not None else "",
        item_type=str(item_type) if item_type is not None else "",
        item_name=str(item_name) if item_name is not None else "",
        quantity=quantity,
        unit_price=unit_price,
        total=total,
    )


def deserialize_inventory(raw_row: Sequence[object]) -> InventoryRow:
    item_id, item_name, quantity_raw = raw_row
    return InventoryRow(
        item_id=str(item_id),
        item_name=str(item_name) if item_name is not None else "",
        quantity=_to_decimal(quantity_raw),
    )


def deserialize_movement(raw_row: Sequence[object]) -> MovementRow:
    (
        movement_id,
        timestamp_iso,
        item_id,
        item_type,
        direction,
        quantity_raw,
        balance_after_raw,
        reason,
    ) = raw_row

    return MovementRow(
        movement_id=str(movement_id),
        timestamp_iso=str(timestamp_iso) if timestamp_iso is not None else "",
        item_id=str(item_id),
        item_type=str(item_type),
        direction=str(direction),
        quantity=_to_decimal(quantity_raw),
        balance_after=_to_decimal(balance_after_raw),
        reason=str(reason) if reason is not None else "",
    )


def deserialize_ledger_entry(raw_row: Sequence[object]) -> LedgerEntryRow:
    """Convert a raw ``Ledger`` row into a :class:`LedgerEntryRow`.

    Blank debit or credit cells are read as zero so that replaying the ledger
    never trips over partially filled rows.
    """

    (
        entry_id,
        party_id,
        transaction_id,
        transaction_type,
        date_iso,
        debit_raw,
        credit_raw,
        balance_after_raw,
        notes,
    ) = raw_row

    return LedgerEntryRow(
        entry_id=str(entry_id),
        party_id=str(party_id),
        transaction_id=str(transaction_id) if transaction_id is not None else "",
        transaction_type=str(transaction_type) if transaction_type is not None else "",
        date_iso=str(date_iso) if date_iso is not None else "",
        debit=_to_decimal(debit_raw, "0.00"),
        credit=_to_decimal(credit_raw, "0.00"),
        balance_after=_to_decimal(balance_after_raw, "0.00"),
        notes=_optional_str(notes),
    )


def deserialize_party_balance(raw_row: Sequence[object]) -> PartyBalanceRow:
    party_id, balance_raw, last_updated = raw_row
    return PartyBalanceRow(
        party_id=str(party_id),
        balance=_to_decimal(balance_raw, "0.00"),
        last_updated=str(last_updated) if last_updated is not None else "",
    )


def deserialize_invoice(raw_row: Sequence[object]) -> InvoiceRow:
    invoice_id, invoice_type, party_id, date_iso, total_raw = raw_row
    return InvoiceRow(
        invoice_id=str(invoice_id),
        invoice_type=str(invoice_type) if invoice_type is not None else "",
        party_id=_optional_str(party_id),
        date_iso=str(date_iso) if date_iso is not None else "",
        total_amount=_to_decimal(total_raw, "0.00"),
    )

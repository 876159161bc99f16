"""Enumerations shared across the returns engine modules.

Centralises domain constants so that the data access layer (DAL), the
processing services, and the CLI rely on a single source of truth for the
identifiers stored in the master workbook.
"""

from __future__ import annotations

from enum import Enum


# Central schema version expected by all layers when validating workbooks.
EXPECTED_SCHEMA_VERSION = "1.0.0"


class ReturnType(str, Enum):
    """Enumerate the two kinds of commercial return."""

    SALES_RETURN = "sales_return"
    PURCHASE_RETURN = "purchase_return"


class ReturnStatus(str, Enum):
    """Enumerate the lifecycle states of a return document."""

    DRAFT = "draft"
    CONFIRMED = "confirmed"
    CANCELLED = "cancelled"


class ReturnAction(str, Enum):
    """Enumerate the lifecycle actions that mutate stock and balances."""

    CONFIRM = "confirm"
    CANCEL = "cancel"


class ItemType(str, Enum):
    """Enumerate the four independent inventory categories."""

    RAW_MATERIALS = "raw_materials"
    PACKAGING_MATERIALS = "packaging_materials"
    SEMI_FINISHED_PRODUCTS = "semi_finished_products"
    FINISHED_PRODUCTS = "finished_products"


class MovementDirection(str, Enum):
    """Enumerate the direction of an inventory quantity change."""

    IN = "in"
    OUT = "out"

    def inverse(self) -> "MovementDirection":
        return MovementDirection.OUT if self is MovementDirection.IN else MovementDirection.IN


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    RETURNS = "Returns"
    RETURN_ITEMS = "ReturnItems"
    RAW_MATERIALS = "RawMaterials"
    PACKAGING_MATERIALS = "PackagingMaterials"
    SEMI_FINISHED_PRODUCTS = "SemiFinishedProducts"
    FINISHED_PRODUCTS = "FinishedProducts"
    INVENTORY_MOVEMENTS = "InventoryMovements"
    LEDGER = "Ledger"
    PARTY_BALANCES = "PartyBalances"
    INVOICES = "Invoices"


# Each inventory category lives on its own worksheet.
INVENTORY_SHEETS: dict[ItemType, SheetName] = {
    ItemType.RAW_MATERIALS: SheetName.RAW_MATERIALS,
    ItemType.PACKAGING_MATERIALS: SheetName.PACKAGING_MATERIALS,
    ItemType.SEMI_FINISHED_PRODUCTS: SheetName.SEMI_FINISHED_PRODUCTS,
    ItemType.FINISHED_PRODUCTS: SheetName.FINISHED_PRODUCTS,
}


_INVENTORY_COLUMNS = ("ItemID", "ItemName", "Quantity")

# Column layout of every managed worksheet, in serialization order.
SHEET_COLUMNS: dict[SheetName, tuple[str, ...]] = {
    SheetName.RETURNS: (
        "ReturnID",
        "ReturnType",
        "InvoiceID",
        "PartyID",
        "Date",
        "Amount",
        "Status",
        "Version",
        "Notes",
        "CreatedAt",
    ),
    SheetName.RETURN_ITEMS: (
        "ReturnID",
        "LineNo",
        "ItemID",
        "ItemType",
        "ItemName",
        "Quantity",
        "UnitPrice",
        "Total",
    ),
    SheetName.RAW_MATERIALS: _INVENTORY_COLUMNS,
    SheetName.PACKAGING_MATERIALS: _INVENTORY_COLUMNS,
    SheetName.SEMI_FINISHED_PRODUCTS: _INVENTORY_COLUMNS,
    SheetName.FINISHED_PRODUCTS: _INVENTORY_COLUMNS,
    SheetName.INVENTORY_MOVEMENTS: (
        "MovementID",
        "Timestamp",
        "ItemID",
        "ItemType",
        "Direction",
        "Quantity",
        "BalanceAfter",
        "Reason",
    ),
    SheetName.LEDGER: (
        "EntryID",
        "PartyID",
        "TransactionID",
        "TransactionType",
        "Date",
        "Debit",
        "Credit",
        "BalanceAfter",
        "Notes",
    ),
    SheetName.PARTY_BALANCES: ("PartyID", "Balance", "LastUpdated"),
    SheetName.INVOICES: ("InvoiceID", "InvoiceType", "PartyID", "Date", "TotalAmount"),
}


def cancellation_transaction_type(return_type: ReturnType) -> str:
    """Return the ledger transaction type used when a return is cancelled."""

    return f"cancel_{return_type.value}"


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "ReturnType",
    "ReturnStatus",
    "ReturnAction",
    "ItemType",
    "MovementDirection",
    "SheetName",
    "INVENTORY_SHEETS",
    "SHEET_COLUMNS",
    "cancellation_transaction_type",
]

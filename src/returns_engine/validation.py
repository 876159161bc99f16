"""Read-only checks gating every return transition.

Validators never mutate the workbook and never raise for business outcomes:
each returns a :class:`ValidationResult` whose ``failure`` code lets callers
branch without parsing the message.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import List, Optional, Sequence

from . import log
from .constants import ItemType, ReturnStatus, ReturnType
from .core_logic import IncompleteData, MissingReferenceError, ReturnNotFound, RuntimeContext, invoice_exists, load_return
from .inventory import find_stock_shortfalls


class ValidationFailure(str, Enum):
    """Machine-readable reasons a validator can reject a request."""

    NOT_FOUND = "not_found"
    INVALID_STATUS = "invalid_status"
    INVALID_AMOUNT = "invalid_amount"
    NO_ITEMS = "no_items"
    INVALID_QUANTITY = "invalid_quantity"
    INSUFFICIENT_STOCK = "insufficient_stock"
    UNKNOWN_ITEM = "unknown_item"
    INVALID_RETURN_TYPE = "invalid_return_type"
    MISSING_INVOICE = "missing_invoice"
    UNKNOWN_INVOICE = "unknown_invoice"
    INVALID_ITEM_TYPE = "invalid_item_type"
    INVALID_PRICE = "invalid_price"
    EXCEEDS_MAX_QUANTITY = "exceeds_max_quantity"
    INVALID_DATE = "invalid_date"
    INCOMPLETE_DATA = "incomplete_data"


@dataclass(frozen=True)
class ValidationResult:
    valid: bool
    message: Optional[str] = None
    failure: Optional[ValidationFailure] = None

    @classmethod
    def ok(cls) -> "ValidationResult":
        return cls(valid=True)

    @classmethod
    def reject(cls, failure: ValidationFailure, message: str) -> "ValidationResult":
        log.warning("Validation rejected (%s): %s", failure.value, message)
        return cls(valid=False, message=message, failure=failure)


@dataclass(frozen=True)
class ReturnFormItem:
    """One candidate line of a return being drafted."""

    item_id: str
    item_type: str
    quantity: Decimal
    unit_price: Decimal
    item_name: str = ""
    selected: bool = True
    max_quantity: Optional[Decimal] = None


@dataclass(frozen=True)
class ReturnForm:
    """User input for creating a return document."""

    return_type: str
    invoice_id: Optional[str]
    items: Sequence[ReturnFormItem] = field(default_factory=tuple)
    party_id: Optional[str] = None
    date_iso: Optional[str] = None
    notes: Optional[str] = None
    amount: Optional[Decimal] = None

    def selected_items(self) -> List[ReturnFormItem]:
        """Lines the user kept that carry a positive quantity."""

        return [item for item in self.items if item.selected and item.quantity > Decimal("0")]


def validate_return_form(context: RuntimeContext, form: ReturnForm) -> ValidationResult:
    """Check a draft form before a return document is created.

    The checks run in order and the first failure is reported: return type,
    invoice reference, selected items, per-item type, price and maximum
    quantity, a non-negative amount override, optional date format, and
    finally invoice existence.
    """

    try:
        ReturnType(form.return_type)
    except ValueError:
        return ValidationResult.reject(
            ValidationFailure.INVALID_RETURN_TYPE, f"Unknown return type: {form.return_type}"
        )

    if not form.invoice_id:
        return ValidationResult.reject(ValidationFailure.MISSING_INVOICE, "An originating invoice is required")

    selected = form.selected_items()
    if not selected:
        return ValidationResult.reject(
            ValidationFailure.NO_ITEMS, "Select at least one item with a quantity greater than zero"
        )

    for item in selected:
        try:
            ItemType(item.item_type)
        except ValueError:
            return ValidationResult.reject(
                ValidationFailure.INVALID_ITEM_TYPE, f"Unknown item type for {item.item_id}: {item.item_type}"
            )
        if item.unit_price < Decimal("0"):
            return ValidationResult.reject(
                ValidationFailure.INVALID_PRICE, f"Unit price of {item.item_id} cannot be negative"
            )
        if item.max_quantity is not None and item.quantity > item.max_quantity:
            return ValidationResult.reject(
                ValidationFailure.EXCEEDS_MAX_QUANTITY,
                f"Quantity {item.quantity} of {item.item_id} exceeds the returnable {item.max_quantity}",
            )

    if form.amount is not None and form.amount < Decimal("0"):
        return ValidationResult.reject(ValidationFailure.INVALID_AMOUNT, "Return amount cannot be negative")

    if form.date_iso:
        try:
            date.fromisoformat(form.date_iso)
        except ValueError:
            return ValidationResult.reject(ValidationFailure.INVALID_DATE, f"Invalid date: {form.date_iso}")

    if not invoice_exists(context, form.invoice_id):
        return ValidationResult.reject(ValidationFailure.UNKNOWN_INVOICE, f"Unknown invoice: {form.invoice_id}")

    return ValidationResult.ok()


def validate_before_confirm(context: RuntimeContext, return_id: str) -> ValidationResult:
    """Check that a return may be confirmed right now.

    Requires an existing draft with a positive amount and at least one item
    line, all with positive quantities. For purchase returns every inventory
    key must hold at least the combined quantity being sent back.
    """

    try:
        document = load_return(context, return_id)
    except ReturnNotFound:
        return ValidationResult.reject(ValidationFailure.NOT_FOUND, f"Return not found: {return_id}")
    except IncompleteData as exc:
        return ValidationResult.reject(ValidationFailure.INCOMPLETE_DATA, str(exc))

    if document.status is not ReturnStatus.DRAFT:
        return ValidationResult.reject(
            ValidationFailure.INVALID_STATUS,
            f"Only draft returns can be confirmed (return {return_id} is {document.status.value})",
        )

    if document.amount <= Decimal("0"):
        return ValidationResult.reject(
            ValidationFailure.INVALID_AMOUNT, f"Return {return_id} amount must be greater than zero"
        )

    if not document.items:
        return ValidationResult.reject(ValidationFailure.NO_ITEMS, f"Return {return_id} has no items")

    for item in document.items:
        if item.quantity <= Decimal("0"):
            return ValidationResult.reject(
                ValidationFailure.INVALID_QUANTITY,
                f"Item {item.item_id} on return {return_id} has a non-positive quantity",
            )

    if document.return_type is ReturnType.PURCHASE_RETURN:
        try:
            shortfalls = find_stock_shortfalls(context, document.items)
        except MissingReferenceError as exc:
            return ValidationResult.reject(ValidationFailure.UNKNOWN_ITEM, str(exc))
        if shortfalls:
            item_type, item_id, required, available = shortfalls[0]
            return ValidationResult.reject(
                ValidationFailure.INSUFFICIENT_STOCK,
                f"Insufficient stock for {item_type.value}/{item_id}: need {required}, have {available}",
            )

    return ValidationResult.ok()


def _validate_status(context: RuntimeContext, return_id: str, required: ReturnStatus, verb: str) -> ValidationResult:
    try:
        document = load_return(context, return_id)
    except ReturnNotFound:
        return ValidationResult.reject(ValidationFailure.NOT_FOUND, f"Return not found: {return_id}")
    except IncompleteData as exc:
        return ValidationResult.reject(ValidationFailure.INCOMPLETE_DATA, str(exc))

    if document.status is not required:
        return ValidationResult.reject(
            ValidationFailure.INVALID_STATUS,
            f"Only {required.value} returns can be {verb} (return {return_id} is {document.status.value})",
        )
    return ValidationResult.ok()


def validate_before_cancel(context: RuntimeContext, return_id: str) -> ValidationResult:
    return _validate_status(context, return_id, ReturnStatus.CONFIRMED, "cancelled")


def validate_before_delete(context: RuntimeContext, return_id: str) -> ValidationResult:
    return _validate_status(context, return_id, ReturnStatus.DRAFT, "deleted")

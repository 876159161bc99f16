"""Stock adjustments and movement history for return transitions.

All four inventory categories are handled by a single generic adjustment
routine keyed by :class:`~returns_engine.constants.ItemType`. Every quantity
write is a compare-and-swap performed while holding the per-item lock, and
every successful write is followed by a best-effort movement record.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from . import data_manager, log
from .constants import ItemType, MovementDirection, ReturnAction, ReturnType
from .core_logic import (
    InsufficientStock,
    MissingReferenceError,
    ReturnDocument,
    RuntimeContext,
    StockWriteConflict,
    _resolve_timestamp,
    generate_record_id,
    require_positive_quantity,
)
from .saga import SagaStep


MAX_WRITE_ATTEMPTS = 3


class AuditWriteFailed(RuntimeError):
    """Raised internally when a movement record could not be appended."""


# Effect on stock of each lifecycle action, per return type.
DIRECTION_TABLE: Dict[Tuple[ReturnType, ReturnAction], MovementDirection] = {
    (ReturnType.SALES_RETURN, ReturnAction.CONFIRM): MovementDirection.IN,
    (ReturnType.SALES_RETURN, ReturnAction.CANCEL): MovementDirection.OUT,
    (ReturnType.PURCHASE_RETURN, ReturnAction.CONFIRM): MovementDirection.OUT,
    (ReturnType.PURCHASE_RETURN, ReturnAction.CANCEL): MovementDirection.IN,
}


@dataclass(frozen=True)
class StockAdjustment:
    """Outcome of a single applied quantity change."""

    item_type: ItemType
    item_id: str
    direction: MovementDirection
    quantity: Decimal
    quantity_before: Decimal
    quantity_after: Decimal
    movement_id: Optional[str]


def stock_direction(return_type: ReturnType, action: ReturnAction) -> MovementDirection:
    return DIRECTION_TABLE[(ReturnType(return_type), ReturnAction(action))]


def movement_reason(
    document: ReturnDocument,
    item: data_manager.ReturnItemRow,
    action: ReturnAction,
) -> str:
    """Build the human-readable reason stored with each movement."""

    prefix = "Return" if action is ReturnAction.CONFIRM else "Cancel Return"
    return f"{prefix} #{document.return_id} - {document.return_type.value} - {item.item_type}:{item.item_id}"


def get_stock(context: RuntimeContext, item_type: ItemType, item_id: str) -> Decimal:
    """Read the on-hand quantity of an item.

    Raises:
        MissingReferenceError: If the item is not registered in its category.
    """

    try:
        return data_manager.get_item_quantity(context.workbook, item_type, item_id)
    except KeyError as exc:
        log.warning("Inventory lookup failed for %s/%s", ItemType(item_type).value, item_id)
        raise MissingReferenceError(f"Unknown {ItemType(item_type).value} item: {item_id}") from exc


def list_stock(context: RuntimeContext, item_type: ItemType) -> List[data_manager.InventoryRow]:
    return list(data_manager.iter_inventory(context.workbook, item_type))


def required_decreases(
    items: Iterable[data_manager.ReturnItemRow],
) -> Dict[Tuple[ItemType, str], Decimal]:
    """Aggregate item quantities per inventory key.

    A return may list the same item on several lines; sufficiency must be
    judged against the combined quantity.
    """

    totals: Dict[Tuple[ItemType, str], Decimal] = {}
    for item in items:
        key = (ItemType(item.item_type), item.item_id)
        totals[key] = totals.get(key, Decimal("0")) + item.quantity
    return totals


def find_stock_shortfalls(
    context: RuntimeContext,
    items: Iterable[data_manager.ReturnItemRow],
) -> List[Tuple[ItemType, str, Decimal, Decimal]]:
    """Return ``(item_type, item_id, required, available)`` for each short key.

    Raises:
        MissingReferenceError: If one of the items is not registered.
    """

    shortfalls = []
    for (item_type, item_id), required in required_decreases(items).items():
        available = get_stock(context, item_type, item_id)
        if available < required:
            shortfalls.append((item_type, item_id, required, available))
    return shortfalls


def record_movement(
    context: RuntimeContext,
    *,
    item_type: ItemType,
    item_id: str,
    direction: MovementDirection,
    quantity: Decimal,
    balance_after: Decimal,
    reason: str,
) -> Optional[str]:
    """Append a movement record and return its id, or ``None`` on failure.

    Movement history is an audit trail. A failed append is logged as
    :class:`AuditWriteFailed` and never aborts the stock change it describes.
    """

    timestamp = _resolve_timestamp(None)
    row = data_manager.MovementRow(
        movement_id=generate_record_id(prefix="M", when=timestamp),
        timestamp_iso=timestamp.isoformat(),
        item_id=item_id,
        item_type=ItemType(item_type).value,
        direction=direction.value,
        quantity=quantity,
        balance_after=balance_after,
        reason=reason,
    )
    try:
        with context.locks.hold(("sheet", data_manager.MOVEMENTS_SHEET)):
            data_manager.append_movement(context.workbook, row)
    except Exception as exc:
        failure = AuditWriteFailed(f"Movement for {row.item_type}/{item_id} not recorded: {exc}")
        log.error("%s (reason=%r)", failure, reason)
        return None
    return row.movement_id


def adjust_stock(
    context: RuntimeContext,
    *,
    item_type: ItemType,
    item_id: str,
    quantity: Decimal,
    direction: MovementDirection,
    reason: str,
) -> StockAdjustment:
    """Apply a signed quantity change to one inventory item.

    The read, the sufficiency check and the compare-and-swap write all happen
    under the per-item lock. A write that observes a changed quantity (an
    out-of-process writer) is retried from a fresh read.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        item_type (ItemType): Inventory category.
        item_id (str): Item identifier within the category.
        quantity (Decimal): Positive magnitude of the change.
        direction (MovementDirection): ``IN`` adds, ``OUT`` removes.
        reason (str): Text stored on the movement record.

    Returns:
        StockAdjustment: Quantities before and after the change.

    Raises:
        ValueError: If ``quantity`` is not positive.
        MissingReferenceError: If the item does not exist.
        InsufficientStock: If an ``OUT`` change exceeds the on-hand quantity.
        StockWriteConflict: If every write attempt raced.
    """

    require_positive_quantity(quantity)
    item_type = ItemType(item_type)
    direction = MovementDirection(direction)

    with context.locks.hold(("item", item_type.value, item_id)):
        for attempt in range(1, MAX_WRITE_ATTEMPTS + 1):
            current = get_stock(context, item_type, item_id)
            if direction is MovementDirection.OUT and current < quantity:
                log.warning(
                    "Insufficient stock for %s/%s: need %s, have %s",
                    item_type.value,
                    item_id,
                    quantity,
                    current,
                )
                raise InsufficientStock(
                    f"Insufficient stock for {item_type.value}/{item_id}: need {quantity}, have {current}"
                )
            updated = current + quantity if direction is MovementDirection.IN else current - quantity
            try:
                data_manager.set_item_quantity(
                    context.workbook, item_type, item_id, updated, expected=current
                )
            except data_manager.StaleRecordError as exc:
                if attempt == MAX_WRITE_ATTEMPTS:
                    log.error(
                        "Giving up on %s/%s after %d conflicting writes", item_type.value, item_id, attempt
                    )
                    raise StockWriteConflict(
                        f"Stock of {item_type.value}/{item_id} changed during every one of {attempt} write attempts"
                    ) from exc
                log.warning("Quantity of %s/%s changed during write, retrying", item_type.value, item_id)
                continue
            break

        log.info(
            "Adjusted %s/%s %s by %s: %s -> %s",
            item_type.value,
            item_id,
            direction.value,
            quantity,
            current,
            updated,
        )
        movement_id = record_movement(
            context,
            item_type=item_type,
            item_id=item_id,
            direction=direction,
            quantity=quantity,
            balance_after=updated,
            reason=reason,
        )

    return StockAdjustment(
        item_type=item_type,
        item_id=item_id,
        direction=direction,
        quantity=quantity,
        quantity_before=current,
        quantity_after=updated,
        movement_id=movement_id,
    )


def reverse_adjustment(context: RuntimeContext, adjustment: StockAdjustment, *, reason: str) -> StockAdjustment:
    """Undo ``adjustment`` by applying the inverse direction."""

    return adjust_stock(
        context,
        item_type=adjustment.item_type,
        item_id=adjustment.item_id,
        quantity=adjustment.quantity,
        direction=adjustment.direction.inverse(),
        reason=f"Compensate {reason}",
    )


def item_adjustment_step(
    context: RuntimeContext,
    document: ReturnDocument,
    item: data_manager.ReturnItemRow,
    action: ReturnAction,
) -> SagaStep:
    """Build the saga step that adjusts stock for one return line."""

    direction = stock_direction(document.return_type, action)
    reason = movement_reason(document, item, action)

    def apply() -> StockAdjustment:
        return adjust_stock(
            context,
            item_type=ItemType(item.item_type),
            item_id=item.item_id,
            quantity=item.quantity,
            direction=direction,
            reason=reason,
        )

    def compensate(adjustment: StockAdjustment) -> None:
        reverse_adjustment(context, adjustment, reason=reason)

    return SagaStep(
        name=f"stock:{item.item_type}:{item.item_id}#{item.line_no}",
        apply=apply,
        compensate=compensate,
    )


def list_movements(
    context: RuntimeContext,
    *,
    item_type: Optional[ItemType] = None,
    item_id: Optional[str] = None,
) -> List[data_manager.MovementRow]:
    """Return movement records in insertion order, optionally filtered."""

    rows = []
    for row in data_manager.iter_movements(context.workbook):
        if item_type is not None and row.item_type != ItemType(item_type).value:
            continue
        if item_id is not None and row.item_id != str(item_id):
            continue
        rows.append(row)
    return rows

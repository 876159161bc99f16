"""Return lifecycle orchestration.

``perform_confirm`` and ``perform_cancel`` drive a return through its
transition as a saga: the conditional status write comes first, each item's
stock adjustment follows as its own step, and any failure compensates the
applied steps in reverse before the error propagates. The ledger is posted
only once stock is settled; a ledger failure at that point is surfaced as
:class:`~returns_engine.ledger.BalanceSyncError` without undoing stock.

``confirm_return`` and ``cancel_return`` wrap those calls for front-ends,
reporting through a notifier callback and returning a plain success flag.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Callable, List, Optional, Tuple

from . import data_manager, log
from .constants import ReturnAction, ReturnStatus, ReturnType
from .core_logic import (
    BusinessRuleViolation,
    IncompleteData,
    InsufficientStock,
    InvalidStateTransition,
    MissingReferenceError,
    ReturnDocument,
    ReturnNotFound,
    RuntimeContext,
    ValidationError,
    _resolve_timestamp,
    generate_record_id,
    get_invoice,
    list_returns,
    load_return,
    today_iso,
    transition_status,
)
from .inventory import StockAdjustment, item_adjustment_step
from .ledger import BalanceSyncError, handle_return_cancellation, handle_return_confirmation
from .saga import SagaCompensationError, SagaStep, run_saga
from .validation import (
    ReturnForm,
    ValidationFailure,
    ValidationResult,
    validate_before_cancel,
    validate_before_confirm,
    validate_before_delete,
    validate_return_form,
)


Notifier = Callable[[str, bool], None]


@dataclass(frozen=True)
class TransitionOutcome:
    """Everything a successful confirm or cancel changed."""

    document: ReturnDocument
    adjustments: Tuple[StockAdjustment, ...]
    ledger_entry: Optional[data_manager.LedgerEntryRow]


def log_notifier(message: str, success: bool) -> None:
    """Default notifier: route user-facing messages to the package logger."""

    if success:
        log.info("Notification: %s", message)
    else:
        log.warning("Notification: %s", message)


_FAILURE_ERRORS = {
    ValidationFailure.NOT_FOUND: ReturnNotFound,
    ValidationFailure.INVALID_STATUS: InvalidStateTransition,
    ValidationFailure.INSUFFICIENT_STOCK: InsufficientStock,
    ValidationFailure.UNKNOWN_ITEM: MissingReferenceError,
    ValidationFailure.INCOMPLETE_DATA: IncompleteData,
}


def _raise_for(result: ValidationResult) -> None:
    if result.valid:
        return
    error_cls = _FAILURE_ERRORS.get(result.failure, ValidationError)
    raise error_cls(result.message)


def _status_step(context: RuntimeContext, document: ReturnDocument, target: ReturnStatus) -> SagaStep:
    def apply() -> ReturnDocument:
        return transition_status(context, document, target)

    def compensate(updated: ReturnDocument) -> None:
        transition_status(context, updated, document.status, compensating=True)

    return SagaStep(name=f"status:{target.value}", apply=apply, compensate=compensate)


def _run_transition(
    context: RuntimeContext,
    document: ReturnDocument,
    action: ReturnAction,
    target: ReturnStatus,
) -> Tuple[ReturnDocument, Tuple[StockAdjustment, ...]]:
    steps = [_status_step(context, document, target)]
    steps.extend(item_adjustment_step(context, document, item, action) for item in document.items)
    results = run_saga(steps, label=f"{action.value} return {document.return_id}")
    return results[0], tuple(results[1:])


def perform_confirm(context: RuntimeContext, return_id: str) -> TransitionOutcome:
    """Confirm a draft return, adjusting stock and posting the ledger.

    Raises:
        ReturnNotFound: If the return does not exist.
        InvalidStateTransition: If the return is not a draft.
        InsufficientStock: If a purchase return would drive stock negative.
        ValidationError: For any other precondition failure.
        AlreadyProcessed: If a concurrent caller transitioned it first.
        StockWriteConflict: If an item quantity kept changing during the write.
        SagaCompensationError: If a failed transition could not be undone.
        BalanceSyncError: If stock was committed but the ledger was not.
    """

    with context.locks.hold(("return", return_id)):
        _raise_for(validate_before_confirm(context, return_id))
        document = load_return(context, return_id, require_items=True)
        updated, adjustments = _run_transition(context, document, ReturnAction.CONFIRM, ReturnStatus.CONFIRMED)
        try:
            entry = handle_return_confirmation(context, updated)
        except Exception as exc:
            log.error("Ledger posting failed after confirming return '%s': %s", return_id, exc)
            raise BalanceSyncError(
                f"Return {return_id} was confirmed but its ledger entry was not posted: {exc}"
            ) from exc

    log.info("Confirmed return '%s' (%d items)", return_id, len(adjustments))
    return TransitionOutcome(document=updated, adjustments=adjustments, ledger_entry=entry)


def perform_cancel(context: RuntimeContext, return_id: str) -> TransitionOutcome:
    """Cancel a confirmed return, reversing its stock and balance effects.

    Raises the same errors as :func:`perform_confirm`, with
    ``InvalidStateTransition`` when the return is not confirmed.
    """

    with context.locks.hold(("return", return_id)):
        _raise_for(validate_before_cancel(context, return_id))
        document = load_return(context, return_id, require_items=True)
        updated, adjustments = _run_transition(context, document, ReturnAction.CANCEL, ReturnStatus.CANCELLED)
        try:
            entry = handle_return_cancellation(context, updated)
        except Exception as exc:
            log.error("Ledger posting failed after cancelling return '%s': %s", return_id, exc)
            raise BalanceSyncError(
                f"Return {return_id} was cancelled but its ledger reversal was not posted: {exc}"
            ) from exc

    log.info("Cancelled return '%s' (%d items)", return_id, len(adjustments))
    return TransitionOutcome(document=updated, adjustments=adjustments, ledger_entry=entry)


def _notify_outcome(
    operation: Callable[[RuntimeContext, str], TransitionOutcome],
    context: RuntimeContext,
    return_id: str,
    *,
    success_message: str,
    notifier: Optional[Notifier],
) -> bool:
    notify = notifier or log_notifier
    try:
        operation(context, return_id)
    except (BusinessRuleViolation, BalanceSyncError, SagaCompensationError) as exc:
        notify(str(exc), False)
        return False
    except Exception as exc:
        log.exception("Unexpected failure while processing return '%s'", return_id)
        notify(f"Return {return_id} could not be processed: {exc}", False)
        return False
    notify(success_message, True)
    return True


def confirm_return(context: RuntimeContext, return_id: str, *, notifier: Optional[Notifier] = None) -> bool:
    """Confirm ``return_id`` and report the outcome through ``notifier``.

    Returns:
        bool: ``True`` when stock and ledger were both updated.
    """

    return _notify_outcome(
        perform_confirm,
        context,
        return_id,
        success_message=f"Return {return_id} confirmed",
        notifier=notifier,
    )


def cancel_return(context: RuntimeContext, return_id: str, *, notifier: Optional[Notifier] = None) -> bool:
    """Cancel ``return_id`` and report the outcome through ``notifier``."""

    return _notify_outcome(
        perform_cancel,
        context,
        return_id,
        success_message=f"Return {return_id} cancelled",
        notifier=notifier,
    )


def create_return(context: RuntimeContext, form: ReturnForm) -> ReturnDocument:
    """Persist a new draft return built from ``form``.

    Only selected lines with a positive quantity are stored. Each line's
    total is ``quantity * unit_price``; the return amount is their sum unless
    the form overrides it. When the form names no party, the invoice's party
    is used.

    Raises:
        ValidationError: If :func:`validate_return_form` rejects the form.
    """

    result = validate_return_form(context, form)
    if not result.valid:
        raise ValidationError(result.message)

    timestamp = _resolve_timestamp(None)
    return_id = generate_record_id(prefix="R", when=timestamp)
    items: List[data_manager.ReturnItemRow] = []
    for line_no, item in enumerate(form.selected_items(), start=1):
        items.append(
            data_manager.ReturnItemRow(
                return_id=return_id,
                line_no=line_no,
                item_id=item.item_id,
                item_type=item.item_type,
                item_name=item.item_name,
                quantity=item.quantity,
                unit_price=item.unit_price,
                total=item.quantity * item.unit_price,
            )
        )

    amount = form.amount if form.amount is not None else sum((item.total for item in items), Decimal("0.00"))
    party_id = form.party_id or get_invoice(context, form.invoice_id).party_id
    header = data_manager.ReturnRow(
        return_id=return_id,
        return_type=ReturnType(form.return_type).value,
        invoice_id=form.invoice_id,
        party_id=party_id,
        date_iso=form.date_iso or today_iso(),
        amount=amount,
        status=ReturnStatus.DRAFT.value,
        version=1,
        notes=form.notes,
        created_at=timestamp.isoformat(),
    )

    with context.locks.hold(("sheet", data_manager.RETURNS_SHEET)):
        data_manager.append_return(context.workbook, header)
    with context.locks.hold(("sheet", data_manager.RETURN_ITEMS_SHEET)):
        for row in items:
            data_manager.append_return_item(context.workbook, row)

    log.info(
        "Created %s '%s' for invoice '%s' (%d items, amount=%s)",
        header.return_type,
        return_id,
        form.invoice_id,
        len(items),
        amount,
    )
    return ReturnDocument(header=header, items=tuple(items))


def update_return_details(
    context: RuntimeContext,
    return_id: str,
    *,
    date_iso: Optional[str] = None,
    notes: Optional[str] = None,
) -> ReturnDocument:
    """Edit the descriptive fields of a draft return.

    Raises:
        ReturnNotFound: If the return does not exist.
        InvalidStateTransition: If the return is no longer a draft.
        ValidationError: If ``date_iso`` is not an ISO date.
    """

    fields = {}
    if date_iso is not None:
        try:
            date.fromisoformat(date_iso)
        except ValueError as exc:
            raise ValidationError(f"Invalid date: {date_iso}") from exc
        fields["Date"] = date_iso
    if notes is not None:
        fields["Notes"] = notes

    with context.locks.hold(("return", return_id)):
        document = load_return(context, return_id)
        if document.status is not ReturnStatus.DRAFT:
            log.warning("Rejected edit of %s return '%s'", document.status.value, return_id)
            raise InvalidStateTransition(f"Only draft returns can be edited (return {return_id} is {document.status.value})")
        if fields:
            with context.locks.hold(("sheet", data_manager.RETURNS_SHEET)):
                data_manager.update_return_fields(context.workbook, return_id, field_values=fields)
            log.info("Updated return '%s': %s", return_id, ", ".join(sorted(fields)))
        return load_return(context, return_id)


def delete_return(context: RuntimeContext, return_id: str) -> int:
    """Delete a draft return and its item lines.

    Returns:
        int: Number of item lines removed.

    Raises:
        ReturnNotFound: If the return does not exist.
        InvalidStateTransition: If the return is not a draft.
    """

    with context.locks.hold(("return", return_id)):
        _raise_for(validate_before_delete(context, return_id))
        with context.locks.hold(("sheet", data_manager.RETURN_ITEMS_SHEET)):
            with context.locks.hold(("sheet", data_manager.RETURNS_SHEET)):
                removed = data_manager.delete_return(context.workbook, return_id)
    log.info("Deleted draft return '%s' (%d items)", return_id, removed)
    return removed


def get_return(context: RuntimeContext, return_id: str) -> ReturnDocument:
    return load_return(context, return_id)


__all__ = [
    "Notifier",
    "TransitionOutcome",
    "log_notifier",
    "perform_confirm",
    "perform_cancel",
    "confirm_return",
    "cancel_return",
    "create_return",
    "update_return_details",
    "delete_return",
    "get_return",
    "list_returns",
]

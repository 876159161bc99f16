"""Financial bridge between return documents and the party ledger.

The ledger is append-only and is the source of truth for party balances.
Each entry fixes a ``balance_after`` snapshot computed as the prior balance
plus ``debit - credit``; the cached ``PartyBalances`` row is moved to the same
value while the per-party lock is held. Positive balances mean the party owes
us.
"""

from __future__ import annotations

from decimal import Decimal
from typing import List, Optional, Tuple

from . import data_manager, log
from .constants import ReturnAction, ReturnType, cancellation_transaction_type
from .core_logic import ReturnDocument, RuntimeContext, _resolve_timestamp, generate_record_id, today_iso


ZERO = Decimal("0.00")


class BalanceSyncError(RuntimeError):
    """Raised when the ledger or balance cache could not follow a stock change.

    Inventory is not rolled back when this happens; the reconciliation job
    posts the missing entry later.
    """


def return_balance_delta(return_type: ReturnType, action: ReturnAction, amount: Decimal) -> Tuple[Decimal, Decimal]:
    """Return the ``(debit, credit)`` pair a return transition posts.

    A confirmed sales return credits the customer (they owe us less); a
    confirmed purchase return debits the supplier (we owe them less).
    Cancellation posts the mirror image.
    """

    return_type = ReturnType(return_type)
    action = ReturnAction(action)
    credits_party = (return_type is ReturnType.SALES_RETURN) == (action is ReturnAction.CONFIRM)
    if credits_party:
        return ZERO, amount
    return amount, ZERO


def _prior_balance(context: RuntimeContext, party_id: str) -> Decimal:
    """Return the last ledger snapshot of ``party_id``.

    The cached row is only compared, never chained from, so a failed cache
    write cannot leak into later snapshots.
    """

    last = None
    for entry in data_manager.iter_ledger_entries(context.workbook, party_id):
        last = entry
    prior = last.balance_after if last is not None else ZERO

    cached = data_manager.get_party_balance(context.workbook, party_id)
    if cached is not None and cached.balance != prior:
        log.warning(
            "Cached balance of party '%s' (%s) disagrees with the ledger (%s); chaining from the ledger",
            party_id,
            cached.balance,
            prior,
        )
    return prior


def post_ledger_entry(
    context: RuntimeContext,
    *,
    party_id: str,
    transaction_id: str,
    transaction_type: str,
    date_iso: str,
    debit: Decimal,
    credit: Decimal,
    notes: Optional[str] = None,
) -> data_manager.LedgerEntryRow:
    """Append a ledger entry and move the cached balance to its snapshot.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        party_id (str): Counterparty whose balance changes.
        transaction_id (str): Identifier of the originating document.
        transaction_type (str): Ledger classification of the entry.
        date_iso (str): Accounting date in ``YYYY-MM-DD`` form.
        debit (Decimal): Amount increasing what the party owes us.
        credit (Decimal): Amount decreasing what the party owes us.
        notes (str | None): Free text stored with the entry.

    Returns:
        data_manager.LedgerEntryRow: The appended entry.
    """

    with context.locks.hold(("party", party_id)):
        prior = _prior_balance(context, party_id)
        balance_after = prior + (debit - credit)
        timestamp = _resolve_timestamp(None)
        entry = data_manager.LedgerEntryRow(
            entry_id=generate_record_id(prefix="L", when=timestamp),
            party_id=party_id,
            transaction_id=transaction_id,
            transaction_type=transaction_type,
            date_iso=date_iso,
            debit=debit,
            credit=credit,
            balance_after=balance_after,
            notes=notes,
        )
        with context.locks.hold(("sheet", data_manager.LEDGER_SHEET)):
            data_manager.append_ledger_entry(context.workbook, entry)
        with context.locks.hold(("sheet", data_manager.PARTY_BALANCES_SHEET)):
            data_manager.upsert_party_balance(
                context.workbook,
                data_manager.PartyBalanceRow(
                    party_id=party_id,
                    balance=balance_after,
                    last_updated=timestamp.isoformat(),
                ),
            )

    log.info(
        "Posted ledger entry '%s' for party '%s' (%s, debit=%s, credit=%s): %s -> %s",
        entry.entry_id,
        party_id,
        transaction_type,
        debit,
        credit,
        prior,
        balance_after,
    )
    return entry


def handle_return_confirmation(
    context: RuntimeContext, document: ReturnDocument
) -> Optional[data_manager.LedgerEntryRow]:
    """Post the balance effect of a confirmed return.

    Returns ``None`` without touching the ledger when the return has no
    party.
    """

    if not document.party_id:
        return None
    debit, credit = return_balance_delta(document.return_type, ReturnAction.CONFIRM, document.amount)
    return post_ledger_entry(
        context,
        party_id=document.party_id,
        transaction_id=document.return_id,
        transaction_type=document.return_type.value,
        date_iso=document.header.date_iso or today_iso(),
        debit=debit,
        credit=credit,
        notes=f"Return #{document.return_id} - {document.return_type.value}",
    )


def handle_return_cancellation(
    context: RuntimeContext, document: ReturnDocument
) -> Optional[data_manager.LedgerEntryRow]:
    """Post the exact inverse of the confirmation entry, dated today.

    The original entry is never mutated or deleted.
    """

    if not document.party_id:
        return None
    debit, credit = return_balance_delta(document.return_type, ReturnAction.CANCEL, document.amount)
    return post_ledger_entry(
        context,
        party_id=document.party_id,
        transaction_id=document.return_id,
        transaction_type=cancellation_transaction_type(document.return_type),
        date_iso=today_iso(),
        debit=debit,
        credit=credit,
        notes=f"Cancel Return #{document.return_id} - {document.return_type.value}",
    )


def get_party_balance(context: RuntimeContext, party_id: str) -> Decimal:
    """Return the cached balance of ``party_id``; zero before the first entry."""

    row = data_manager.get_party_balance(context.workbook, party_id)
    return row.balance if row is not None else ZERO


def list_ledger_entries(context: RuntimeContext, party_id: Optional[str] = None) -> List[data_manager.LedgerEntryRow]:
    return list(data_manager.iter_ledger_entries(context.workbook, party_id))


def replay_party_balance(context: RuntimeContext, party_id: str) -> Decimal:
    """Recompute a party's balance by summing ``debit - credit`` over the ledger."""

    total = ZERO
    for entry in data_manager.iter_ledger_entries(context.workbook, party_id):
        total += entry.debit - entry.credit
    return total

"""Detect and repair divergence between returns, the ledger, and cached balances.

A ledger write that fails after stock was committed leaves the return
``confirmed`` (or ``cancelled``) with no matching ledger entry. A cache write
that fails leaves ``PartyBalances`` out of step with the ledger. Both are
recoverable from stored data: the return documents say which entries must
exist, and the ledger replay says what every balance must be.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from decimal import Decimal
from typing import Dict, List, Set, Tuple

from . import data_manager, log
from .constants import ReturnAction, ReturnStatus, ReturnType, cancellation_transaction_type
from .core_logic import RuntimeContext, _resolve_timestamp, today_iso
from .ledger import post_ledger_entry, replay_party_balance, return_balance_delta


@dataclass(frozen=True)
class BalanceDrift:
    """A party whose cached balance differs from the ledger replay."""

    party_id: str
    cached: Decimal
    replayed: Decimal

    @property
    def difference(self) -> Decimal:
        return self.cached - self.replayed


@dataclass(frozen=True)
class MissingLedgerEntry:
    """A ledger entry a return's status implies but the ledger lacks."""

    return_id: str
    party_id: str
    return_type: ReturnType
    action: ReturnAction
    amount: Decimal
    date_iso: str

    @property
    def transaction_type(self) -> str:
        if self.action is ReturnAction.CONFIRM:
            return self.return_type.value
        return cancellation_transaction_type(self.return_type)


@dataclass
class ReconciliationReport:
    """Findings of a reconciliation run and, when repairing, what was fixed."""

    missing_entries: List[MissingLedgerEntry] = field(default_factory=list)
    drifts: List[BalanceDrift] = field(default_factory=list)
    posted_entries: List[data_manager.LedgerEntryRow] = field(default_factory=list)
    reset_balances: List[str] = field(default_factory=list)

    @property
    def is_clean(self) -> bool:
        return not self.missing_entries and not self.drifts


def find_missing_ledger_entries(context: RuntimeContext) -> List[MissingLedgerEntry]:
    """List the return-driven ledger entries that should exist but do not.

    A ``confirmed`` return with a party implies one confirmation entry; a
    ``cancelled`` one implies the confirmation entry and its reversal.
    """

    posted: Set[Tuple[str, str]] = {
        (entry.transaction_id, entry.transaction_type)
        for entry in data_manager.iter_ledger_entries(context.workbook)
    }
    missing: List[MissingLedgerEntry] = []
    for header in data_manager.iter_returns(context.workbook):
        if not header.party_id:
            continue
        if header.status not in (ReturnStatus.CONFIRMED.value, ReturnStatus.CANCELLED.value):
            continue
        return_type = ReturnType(header.return_type)
        actions = [ReturnAction.CONFIRM]
        if header.status == ReturnStatus.CANCELLED.value:
            actions.append(ReturnAction.CANCEL)
        for action in actions:
            candidate = MissingLedgerEntry(
                return_id=header.return_id,
                party_id=header.party_id,
                return_type=return_type,
                action=action,
                amount=header.amount,
                date_iso=header.date_iso if action is ReturnAction.CONFIRM else today_iso(),
            )
            if (header.return_id, candidate.transaction_type) not in posted:
                missing.append(candidate)
    return missing


def find_balance_drift(context: RuntimeContext) -> List[BalanceDrift]:
    """Compare every cached balance with its ledger replay.

    Parties that appear in the ledger but have no cached row are reported
    with a cached balance of zero.
    """

    cached: Dict[str, Decimal] = {
        row.party_id: row.balance for row in data_manager.iter_party_balances(context.workbook)
    }
    parties = list(cached)
    for entry in data_manager.iter_ledger_entries(context.workbook):
        if entry.party_id not in parties:
            parties.append(entry.party_id)

    drifts = []
    for party_id in parties:
        replayed = replay_party_balance(context, party_id)
        current = cached.get(party_id, Decimal("0.00"))
        if current != replayed:
            drifts.append(BalanceDrift(party_id=party_id, cached=current, replayed=replayed))
    return drifts


def reconcile(context: RuntimeContext, *, repair: bool = False) -> ReconciliationReport:
    """Report, and optionally repair, ledger gaps and balance drift.

    With ``repair=True`` drifted caches are first reset to the ledger replay,
    then the missing entries are posted; each posting moves the cache along
    with its ``balance_after`` snapshot.
    """

    report = ReconciliationReport(
        missing_entries=find_missing_ledger_entries(context),
        drifts=find_balance_drift(context),
    )
    if repair:
        stamp = _resolve_timestamp(None).isoformat()
        for drift in report.drifts:
            with context.locks.hold(("party", drift.party_id)):
                replayed = replay_party_balance(context, drift.party_id)
                data_manager.upsert_party_balance(
                    context.workbook,
                    data_manager.PartyBalanceRow(party_id=drift.party_id, balance=replayed, last_updated=stamp),
                )
            report.reset_balances.append(drift.party_id)
            log.warning(
                "Reset cached balance of party '%s' from %s to %s",
                drift.party_id,
                drift.cached,
                replayed,
            )

        for missing in report.missing_entries:
            debit, credit = return_balance_delta(missing.return_type, missing.action, missing.amount)
            entry = post_ledger_entry(
                context,
                party_id=missing.party_id,
                transaction_id=missing.return_id,
                transaction_type=missing.transaction_type,
                date_iso=missing.date_iso,
                debit=debit,
                credit=credit,
                notes=f"Reconciled {missing.transaction_type} for return #{missing.return_id}",
            )
            report.posted_entries.append(entry)

    log.info(
        "Reconciliation %s: %d missing ledger entries, %d drifted balances",
        "repaired" if repair else "checked",
        len(report.missing_entries),
        len(report.drifts),
    )
    return report

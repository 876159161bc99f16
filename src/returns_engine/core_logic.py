"""Business logic foundation for the returns engine.

This module owns the runtime context shared by every service, the domain
exception hierarchy, and the guarded status transitions of return documents.
It consumes the Data Access Layer (DAL) for all I/O; the stock, ledger,
validation and orchestration rules live in their own modules and build on the
helpers defined here.
"""

from __future__ import annotations

import threading
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import UTC, datetime
from decimal import Decimal
from pathlib import Path
from typing import Any, Dict, Hashable, Iterator, List, Optional, Tuple

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, ItemType, ReturnStatus, ReturnType


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced return, invoice, or inventory item is unknown."""


class ReturnNotFound(MissingReferenceError):
    """Raised when no return document exists for the requested identifier."""


class IncompleteData(MissingReferenceError):
    """Raised when a return header exists but cannot be processed as stored."""


class InvalidStateTransition(BusinessRuleViolation):
    """Raised when a lifecycle action is not legal from the current status."""


class InsufficientStock(BusinessRuleViolation):
    """Raised when a stock decrease would take a quantity below zero."""


class AlreadyProcessed(BusinessRuleViolation):
    """Raised when a concurrent caller transitioned the return first."""


class StockWriteConflict(BusinessRuleViolation):
    """Raised when an item quantity kept changing under every write attempt."""


class ValidationError(BusinessRuleViolation):
    """Raised when a validator rejects a request before any mutation."""


class ResourceLocks:
    """Registry of re-entrant locks keyed by resource identity.

    Keys are plain tuples such as ``("return", "R1")`` or
    ``("item", "raw_materials", "RM-1")``. Locks are created on first use and
    kept for the lifetime of the registry.
    """

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: Dict[Hashable, threading.RLock] = {}

    def get(self, key: Hashable) -> threading.RLock:
        with self._guard:
            lock = self._locks.get(key)
            if lock is None:
                lock = threading.RLock()
                self._locks[key] = lock
            return lock

    @contextmanager
    def hold(self, key: Hashable) -> Iterator[None]:
        lock = self.get(key)
        with lock:
            yield


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration, workbook, and locks used by the services."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)
    locks: ResourceLocks = field(default_factory=ResourceLocks, repr=False, compare=False)


@dataclass(frozen=True)
class ReturnDocument:
    """A return header together with its ordered item lines."""

    header: data_manager.ReturnRow
    items: Tuple[data_manager.ReturnItemRow, ...]

    @property
    def return_id(self) -> str:
        return self.header.return_id

    @property
    def return_type(self) -> ReturnType:
        return ReturnType(self.header.return_type)

    @property
    def status(self) -> ReturnStatus:
        return ReturnStatus(self.header.status)

    @property
    def party_id(self) -> Optional[str]:
        return self.header.party_id

    @property
    def amount(self) -> Decimal:
        return self.header.amount


# Transitions callers may request.
ALLOWED_TRANSITIONS: Dict[ReturnStatus, Tuple[ReturnStatus, ...]] = {
    ReturnStatus.DRAFT: (ReturnStatus.CONFIRMED,),
    ReturnStatus.CONFIRMED: (ReturnStatus.CANCELLED,),
    ReturnStatus.CANCELLED: (),
}

# Reverts issued only while compensating a failed transition.
COMPENSATING_TRANSITIONS: Dict[ReturnStatus, Tuple[ReturnStatus, ...]] = {
    ReturnStatus.CONFIRMED: (ReturnStatus.DRAFT,),
    ReturnStatus.CANCELLED: (ReturnStatus.CONFIRMED,),
}


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Resolve optional timestamps into consistent, timezone-aware values.

    Args:
        candidate (datetime | None): Caller-provided timestamp. When ``None``
            the helper fabricates one so downstream operations can rely on
            comparable values.

    Returns:
        datetime: ``candidate`` as-is when provided, otherwise the current UTC
            datetime generated via :func:`datetime.now`.
    """

    return candidate if candidate is not None else datetime.now(UTC)


def today_iso() -> str:
    """Return the current UTC date formatted as ``YYYY-MM-DD``."""

    return _resolve_timestamp(None).date().isoformat()


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return a mutable cache bucket dedicated to the supplied name."""

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict one or more cache buckets after mutating workbook state."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_invoices_cache(context: RuntimeContext) -> Dict[str, Any]:
    """Populate the invoice cache bucket on demand.

    Invoices are read-only for the engine, so the bucket is built once per
    context and never invalidated by return processing.
    """

    bucket = _get_cache_bucket(context, "invoices")
    if "by_id" not in bucket:
        all_invoices = list(data_manager.iter_invoices(context.workbook))
        bucket["by_id"] = {invoice.invoice_id: invoice for invoice in all_invoices}
        log.debug("Populated invoices cache with %d entries", len(all_invoices))
    return bucket


def load_runtime_context(config_path: Optional[Path] = None) -> RuntimeContext:
    """Load configuration settings and a live workbook for the services.

    The helper resolves ``config.ini``, parses settings, and opens the Excel
    workbook that stores returns, stock and ledger data. The resulting
    :class:`RuntimeContext` bundles the immutable settings with a mutable
    workbook handle, an empty cache store, and a fresh lock registry.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer performs its upward search from
            the current working directory.

    Returns:
        RuntimeContext: Fully populated context ready for orchestration
            functions.

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
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION`` or the workbook lacks one of
            the managed sheets.
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

    absent = data_manager.missing_sheets(context.workbook)
    if absent:
        log.error("Workbook is missing sheets: %s", ", ".join(absent))
        raise RuntimeError(f"Workbook is missing sheets: {', '.join(absent)}")

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def persist_context(context: RuntimeContext) -> None:
    """Persist any in-memory workbook changes to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook to discard unsaved modifications.

    Returns:
        RuntimeContext: Fresh context containing a newly opened workbook and
            an empty cache. The lock registry is carried over so callers
            still serialised on the old context stay serialised.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook, locks=context.locks)


def generate_record_id(*, prefix: str, when: Optional[datetime] = None) -> str:
    """Generate a sortable identifier using UTC timestamps.

    Args:
        prefix (str): Designator prepended to the identifier (``"R"`` for
            returns, ``"M"`` for movements, ``"L"`` for ledger entries).
        when (datetime | None): Timestamp used for the sortable part. When
            ``None`` the current UTC time is used.

    Returns:
        str: Identifier formed as ``{prefix}{YYYYMMDDHHMMSSffffff}{suffix}``
            where ``suffix`` is four random hex characters, so concurrent
            callers within the same microsecond never collide.
    """
    when = when or _resolve_timestamp(None)
    return f"{prefix}{when.strftime('%Y%m%d%H%M%S%f')}{uuid.uuid4().hex[:4]}"


def require_positive_quantity(quantity: Decimal) -> None:
    """Validate that a quantity is strictly positive.

    Raises:
        ValueError: If ``quantity`` is zero or negative.
    """
    if quantity <= Decimal("0"):
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be greater than zero")


def get_invoice(context: RuntimeContext, invoice_id: str) -> data_manager.InvoiceRow:
    """Resolve an invoice header by its identifier.

    Raises:
        MissingReferenceError: If ``invoice_id`` is absent from the workbook.
    """
    cache = _ensure_invoices_cache(context)
    try:
        return cache["by_id"][str(invoice_id)]
    except KeyError as exc:
        log.warning("Invoice lookup failed for id '%s'", invoice_id)
        raise MissingReferenceError(f"Unknown invoice id: {invoice_id}") from exc


def invoice_exists(context: RuntimeContext, invoice_id: str) -> bool:
    return str(invoice_id) in _ensure_invoices_cache(context)["by_id"]


def load_return(context: RuntimeContext, return_id: str, *, require_items: bool = False) -> ReturnDocument:
    """Load a return header and its item lines straight from the workbook.

    Return documents are never cached: the status and version read here are
    the optimistic-concurrency token for the next status write, so they must
    reflect the workbook as it is now.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        return_id (str): Identifier of the return document.
        require_items (bool): When ``True`` a document without item lines is
            rejected as incomplete.

    Returns:
        ReturnDocument: Header and ordered item lines.

    Raises:
        ReturnNotFound: If no header exists for ``return_id``.
        IncompleteData: If the stored return type, status or item categories
            are not recognised, or ``require_items`` is set and no item lines
            exist.
    """
    header = data_manager.get_return(context.workbook, return_id)
    if header is None:
        log.warning("Return lookup failed for id '%s'", return_id)
        raise ReturnNotFound(f"Return not found: {return_id}")

    try:
        ReturnType(header.return_type)
        ReturnStatus(header.status)
    except ValueError as exc:
        log.error("Return '%s' has unreadable type/status: %s", return_id, exc)
        raise IncompleteData(f"Return {return_id} has an invalid type or status") from exc

    items = tuple(data_manager.iter_return_items(context.workbook, return_id))
    for item in items:
        try:
            ItemType(item.item_type)
        except ValueError as exc:
            log.error("Return '%s' line %s has unknown item type '%s'", return_id, item.line_no, item.item_type)
            raise IncompleteData(f"Return {return_id} has an item with unknown type '{item.item_type}'") from exc

    if require_items and not items:
        log.error("Return '%s' has no item lines", return_id)
        raise IncompleteData(f"Return {return_id} has no items")

    return ReturnDocument(header=header, items=items)


def list_returns(context: RuntimeContext, *, status: Optional[ReturnStatus] = None) -> List[data_manager.ReturnRow]:
    """Return the stored return headers in sheet order, optionally by status."""
    rows = list(data_manager.iter_returns(context.workbook))
    if status is None:
        return rows
    return [row for row in rows if row.status == ReturnStatus(status).value]


def transition_status(
    context: RuntimeContext,
    document: ReturnDocument,
    new_status: ReturnStatus,
    *,
    compensating: bool = False,
) -> ReturnDocument:
    """Conditionally move ``document`` to ``new_status``.

    The write only lands when the stored status and version still match the
    snapshot held in ``document``; otherwise another caller got there first.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        document (ReturnDocument): Snapshot the caller based its decision on.
        new_status (ReturnStatus): Target status.
        compensating (bool): ``True`` only when the saga runner reverts a
            failed transition. Enables the ``confirmed -> draft`` and
            ``cancelled -> confirmed`` edges and nothing else.

    Returns:
        ReturnDocument: Document carrying the stored header after the write.

    Raises:
        InvalidStateTransition: If the edge is not legal for this caller.
        AlreadyProcessed: If the stored status or version changed since the
            snapshot was read.
    """
    current = document.status
    table = COMPENSATING_TRANSITIONS if compensating else ALLOWED_TRANSITIONS
    if new_status not in table.get(current, ()):
        log.warning(
            "Rejected transition of return '%s' from %s to %s",
            document.return_id,
            current.value,
            new_status.value,
        )
        raise InvalidStateTransition(
            f"Cannot move return {document.return_id} from '{current.value}' to '{new_status.value}'"
        )

    with context.locks.hold(("sheet", data_manager.RETURNS_SHEET)):
        try:
            header = data_manager.update_return_status(
                context.workbook,
                document.return_id,
                expected_status=current.value,
                new_status=new_status.value,
                expected_version=document.header.version,
            )
        except data_manager.StaleRecordError as exc:
            raise AlreadyProcessed(f"Return {document.return_id} was already processed") from exc

    log.info(
        "%s return '%s': %s -> %s (v%d)",
        "Reverted" if compensating else "Transitioned",
        document.return_id,
        current.value,
        new_status.value,
        header.version,
    )
    return ReturnDocument(header=header, items=document.items)

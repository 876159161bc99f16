"""Ordered side effects with per-step compensation.

The stock, return and ledger stores share no transaction boundary, so a
multi-store change is expressed as a list of :class:`SagaStep` objects. Each
step pairs a forward action with the action that undoes it. When a step
fails, every step that already completed is compensated in reverse order and
the original error propagates to the caller.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence

from . import log


class SagaCompensationError(RuntimeError):
    """Raised when undoing a completed step fails.

    The error that triggered compensation is available as ``__cause__`` and as
    :attr:`original`. Stores may be left partially mutated; operator attention
    is required.
    """

    def __init__(self, message: str, *, step_name: str, original: BaseException) -> None:
        super().__init__(message)
        self.step_name = step_name
        self.original = original


@dataclass(frozen=True)
class SagaStep:
    """A named forward action and its compensating action.

    ``compensate`` receives the value returned by ``apply``. It may be
    ``None`` for steps with nothing to undo.
    """

    name: str
    apply: Callable[[], Any]
    compensate: Optional[Callable[[Any], None]] = None


def run_saga(steps: Sequence[SagaStep], *, label: str = "saga") -> List[Any]:
    """Execute ``steps`` in order, compensating completed ones on failure.

    Args:
        steps (Sequence[SagaStep]): Steps to apply, in order.
        label (str): Name used in log messages, typically the return id and
            action.

    Returns:
        list[Any]: Values returned by each step's ``apply`` callable.

    Raises:
        Exception: Whatever the failing step raised, after every completed
            step was compensated.
        SagaCompensationError: If a compensation itself raised. Remaining
            compensations are not attempted.
    """

    completed: List[tuple[SagaStep, Any]] = []
    for step in steps:
        try:
            result = step.apply()
        except Exception as exc:
            log.error("%s: step '%s' failed: %s", label, step.name, exc)
            _compensate(completed, label=label, original=exc)
            raise
        completed.append((step, result))
        log.debug("%s: step '%s' applied", label, step.name)
    return [result for _, result in completed]


def _compensate(completed: List[tuple[SagaStep, Any]], *, label: str, original: Exception) -> None:
    for step, result in reversed(completed):
        if step.compensate is None:
            continue
        try:
            step.compensate(result)
        except Exception as exc:
            log.critical(
                "%s: compensation of step '%s' failed: %s (original error: %s)",
                label,
                step.name,
                exc,
                original,
            )
            raise SagaCompensationError(
                f"{label}: could not compensate step '{step.name}': {exc}",
                step_name=step.name,
                original=original,
            ) from original
        log.info("%s: compensated step '%s'", label, step.name)

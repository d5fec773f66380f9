"""
Compensating transaction (saga) coordinator.

The relational store exposes no transaction spanning several tables, so
multi-step billing operations run as a sequence of individually committed
steps, each paired with an action that undoes it. When a step fails, the
compensations of every step that already committed run in strict reverse
order.

This is not atomicity. Between a step committing and its compensation running,
other readers can observe the intermediate state, so every compensable step
must leave the data in a state that is safe to observe (and, where a crash
could strand it, repairable on the next read).

Two entry points:

- CompensatingTransactionCoordinator.add() runs a step immediately and
  raises on failure (original error, or RollbackIncompleteError when a
  compensation also failed).
- run_saga() executes a typed list of SagaStep and returns a SagaResult whose
  outcome distinguishes committed / rolled_back / rollback_incomplete.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, List, Optional, Sequence, Tuple

from services.billing_errors import RollbackIncompleteError

logger = logging.getLogger(__name__)

Action = Callable[[], Any]
Compensation = Callable[[], Any]


class SagaOutcome(Enum):
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"
    ROLLBACK_INCOMPLETE = "rollback_incomplete"


@dataclass(frozen=True)
class SagaStep:
    """One forward action and the action that undoes it (None if nothing to undo)."""
    name: str
    forward: Action
    compensate: Optional[Compensation] = None


@dataclass
class SagaResult:
    """Outcome of run_saga()."""
    outcome: SagaOutcome
    results: List[Any] = field(default_factory=list)
    failed_step: Optional[str] = None
    error: Optional[BaseException] = None
    compensation_errors: List[BaseException] = field(default_factory=list)

    @property
    def committed(self) -> bool:
        return self.outcome is SagaOutcome.COMMITTED


class CompensatingTransactionCoordinator:
    """
    Per-call stack of committed steps and their compensations.

    Create one coordinator per workflow invocation; it is never shared across
    requests.
    """

    def __init__(self, name: str = "transaction"):
        self.name = name
        self._results: List[Any] = []
        self._compensations: List[Tuple[str, Compensation]] = []

    @property
    def results(self) -> List[Any]:
        return list(self._results)

    def add(self, forward: Action, compensate: Optional[Compensation] = None, step_name: Optional[str] = None) -> Any:
        """
        Run `forward` now. On success remember its result and compensation.

        On failure, run all registered compensations in reverse order and
        re-raise the original error. If any compensation fails, raise
        RollbackIncompleteError instead (chained to the original error).
        """
        label = step_name or f"step-{len(self._results) + 1}"
        try:
            result = forward()
        except Exception as error:
            logger.warning(f"[{self.name}] {label} failed, rolling back {len(self._compensations)} step(s): {error}")
            compensation_errors = self.rollback()
            if compensation_errors:
                raise RollbackIncompleteError(
                    f"{self.name}: {label} failed and {len(compensation_errors)} compensation(s) failed",
                    original_error=error,
                    compensation_errors=compensation_errors,
                    details={"failed_step": label},
                ) from error
            raise

        self._results.append(result)
        if compensate is not None:
            self._compensations.append((label, compensate))
        return result

    def rollback(self) -> List[BaseException]:
        """
        Run every registered compensation in reverse order.

        All compensations are attempted even when one fails. Returns the
        failures; the stack is cleared either way.
        """
        errors: List[BaseException] = []
        for label, compensate in reversed(self._compensations):
            try:
                compensate()
                logger.info(f"[{self.name}] compensated {label}")
            except Exception as e:
                errors.append(e)
                logger.error(f"[{self.name}] compensation for {label} failed: {e}")
        self._compensations.clear()
        self._results.clear()
        return errors

    def clear(self) -> None:
        self._compensations.clear()
        self._results.clear()


def run_saga(steps: Sequence[SagaStep], name: str = "saga") -> SagaResult:
    """
    Execute steps in order, compensating committed steps if one fails.

    Never raises for a step failure; inspect SagaResult.outcome instead.
    """
    coordinator = CompensatingTransactionCoordinator(name)
    results: List[Any] = []
    for step in steps:
        try:
            results.append(coordinator.add(step.forward, step.compensate, step_name=step.name))
        except RollbackIncompleteError as e:
            return SagaResult(
                outcome=SagaOutcome.ROLLBACK_INCOMPLETE,
                results=results,
                failed_step=step.name,
                error=e.original_error,
                compensation_errors=e.compensation_errors,
            )
        except Exception as e:
            return SagaResult(
                outcome=SagaOutcome.ROLLED_BACK,
                results=results,
                failed_step=step.name,
                error=e,
            )
    return SagaResult(outcome=SagaOutcome.COMMITTED, results=results)

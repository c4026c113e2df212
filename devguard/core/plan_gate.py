"""Single choke point between describing a mutation and performing it."""
from __future__ import annotations

import logging
from enum import Enum
from typing import Callable, Optional, TypeVar

from devguard.core.errors import OperatorDeclined
from devguard.core.logging_manager import LoggingManager, get_logging_manager
from devguard.models.changes import OperationResult, PlannedChange


logger = logging.getLogger(__name__)

T = TypeVar("T")


class GateMode(str, Enum):
    APPLY = "apply"
    DRY_RUN = "dry-run"
    CONFIRM = "confirm"


class PlanGate:
    """Route every :class:`PlannedChange` through dry-run, confirmation or execution.

    Components never branch on the run mode themselves; they describe the
    change and hand the gate the callable that performs it. Dry-run output
    is therefore produced by exactly the code path that mutates the host.
    """

    def __init__(
        self,
        mode: GateMode = GateMode.APPLY,
        *,
        confirm: Optional[Callable[[PlannedChange], bool]] = None,
        logging_manager: Optional[LoggingManager] = None,
    ) -> None:
        if mode is GateMode.CONFIRM and confirm is None:
            raise ValueError("confirmation mode requires a confirm callback")
        self.mode = mode
        self._confirm = confirm
        self._logging_manager = logging_manager or get_logging_manager()

    @property
    def dry_run(self) -> bool:
        return self.mode is GateMode.DRY_RUN

    def submit(self, result: OperationResult, change: PlannedChange, action: Callable[[], T]) -> Optional[T]:
        """Plan ``change`` and, unless previewing, perform it via ``action``.

        Returns the action's return value, or ``None`` in dry-run mode.
        """

        if self.dry_run:
            logger.info("[dry-run] %s", change.describe())
            result.planned.append(change)
            self._logging_manager.log_change(result.step, change, "planned", "pending")
            return None

        if self.mode is GateMode.CONFIRM and self._confirm is not None:
            if not self._confirm(change):
                logger.warning("Operator declined %s", change.describe())
                self._logging_manager.log_change(result.step, change, "declined", "skipped")
                raise OperatorDeclined(f"Operator declined: {change.describe()}")

        logger.info("Applying %s", change.describe())
        try:
            value = action()
        except Exception as exc:
            self._logging_manager.log_change(result.step, change, "failed", "failure", detail=str(exc))
            raise

        result.applied.append(change)
        self._logging_manager.log_change(result.step, change, "applied", "success")
        return value

    def recover(self, result: OperationResult, change: PlannedChange, action: Callable[[], T]) -> T:
        """Run a change that is part of another change's own failure path.

        Recovery is never previewed or put to the operator: once a mutation
        has started, its restoration must complete.
        """

        logger.warning("Recovering: %s", change.describe())
        try:
            value = action()
        except Exception as exc:
            self._logging_manager.log_change(result.step, change, "failed", "failure", detail=str(exc))
            raise
        result.applied.append(change)
        self._logging_manager.log_change(result.step, change, "applied", "success")
        return value


__all__ = ["GateMode", "PlanGate"]

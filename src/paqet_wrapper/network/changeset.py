"""LIFO stack of reversible host network mutations."""

import threading
from collections.abc import Callable
from dataclasses import dataclass
from typing import Any

from ..common.logging import get_logger
from ..models import RouteState

logger = get_logger(__name__)


@dataclass(frozen=True)
class ChangeEntry:
    """An applied mutation and the action that reverts it."""

    description: str
    phase: RouteState
    inverse: Callable[[], Any]


class RouteChangeSet:
    """Records inverses of applied mutations and reverts them last-in first-out.

    A partially applied sequence can always be fully unwound: every forward
    action that succeeded has its inverse on the stack, and unwinding keeps
    going past individual inverse failures.
    """

    def __init__(self) -> None:
        self._entries: list[ChangeEntry] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def __bool__(self) -> bool:
        return len(self) > 0

    @property
    def descriptions(self) -> list[str]:
        with self._lock:
            return [entry.description for entry in self._entries]

    def push(self, description: str, phase: RouteState, inverse: Callable[[], Any]) -> None:
        """Record the inverse of a mutation that has already been applied."""
        with self._lock:
            self._entries.append(ChangeEntry(description, phase, inverse))
        logger.debug("Change recorded", change=description, phase=phase.value)

    def apply(
        self,
        description: str,
        phase: RouteState,
        forward: Callable[[], Any],
        inverse: Callable[[], Any],
    ) -> Any:
        """Run forward and, only if it succeeds, push inverse."""
        result = forward()
        self.push(description, phase, inverse)
        return result

    def unwind(
        self, on_phase_done: Callable[[RouteState], None] | None = None
    ) -> list[str]:
        """Pop and run every inverse, newest first.

        Inverse failures are logged and collected, never raised, so one
        broken cleanup step does not block the rest.

        Args:
            on_phase_done: Called with a phase once its last entry is reverted

        Returns:
            Messages of the inverses that failed
        """
        failures: list[str] = []
        while True:
            with self._lock:
                if not self._entries:
                    break
                entry = self._entries.pop()
                next_phase = self._entries[-1].phase if self._entries else None

            try:
                entry.inverse()
                logger.debug("Change reverted", change=entry.description)
            except Exception as e:
                logger.warning("Failed to revert change", change=entry.description, error=str(e))
                failures.append(f"{entry.description}: {e}")

            if on_phase_done is not None and next_phase != entry.phase:
                on_phase_done(entry.phase)

        return failures

"""Poll-until-timeout helper shared by the supervisor and the orchestrator."""

import threading
import time
from collections.abc import Callable

from .exceptions import OperationCancelledError


def poll_until(
    predicate: Callable[[], bool],
    timeout: float,
    interval: float,
    cancel_event: threading.Event | None = None,
    on_tick: Callable[[int, float], None] | None = None,
) -> bool:
    """Call predicate every interval seconds until it is true or timeout passes.

    The wait between checks blocks on cancel_event (when given), so a stop
    request interrupts the poll immediately instead of after the next sleep.

    Args:
        predicate: Condition to check; polling ends when it returns True
        timeout: Total seconds to keep polling
        interval: Seconds to wait between checks
        cancel_event: Optional event that aborts the poll when set
        on_tick: Optional callback receiving (check number, elapsed seconds)
            after every unsuccessful check

    Returns:
        True if predicate became true, False if the timeout expired

    Raises:
        OperationCancelledError: If cancel_event was set while polling
    """
    waiter = cancel_event or threading.Event()
    start = time.monotonic()
    deadline = start + timeout
    checks = 0

    while True:
        if cancel_event is not None and cancel_event.is_set():
            raise OperationCancelledError("Operation cancelled")

        checks += 1
        if predicate():
            return True

        now = time.monotonic()
        if on_tick is not None:
            on_tick(checks, now - start)
        if now >= deadline:
            return False

        if waiter.wait(min(interval, max(deadline - now, 0.0))) and cancel_event is not None:
            raise OperationCancelledError("Operation cancelled")

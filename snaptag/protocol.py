"""
Protocol definitions for the collaborators snaptag depends on.

The platform timer/notification service is external: on a phone it is the
OS local-notification center, here it is anything with this shape.
Implemented by:
- ThreadTimerService (in-process threading.Timer per alarm)
- NullTimerService (accepts requests, never fires)
"""

from datetime import datetime
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from .types import ShowRecordEvent

FireHandler = Callable[[str], Any]
ShowRecordListener = Callable[[ShowRecordEvent], Any]


@runtime_checkable
class TimerServiceProtocol(Protocol):
    """
    Schedules one callback per identifier at a wall-clock time.

    request_callback raises PlatformSchedulingError when the request is
    rejected. cancel_callback is idempotent: unknown or already-fired ids
    are ignored. When a callback fires, the registered handler is invoked
    with the identifier, possibly on another thread.
    """

    def set_handler(self, handler: Optional[FireHandler]) -> None: ...

    def request_callback(
        self,
        id: str,
        fire_at: datetime,
        payload: Optional[dict[str, Any]] = None,
    ) -> None: ...

    def cancel_callback(self, id: str) -> None: ...

    def close(self) -> None: ...

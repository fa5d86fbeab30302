"""Pending-request tracking and cooperative cancellation.

At most one conversational turn is in flight per controller. Each turn gets a
correlation id (sent to the server as ``pending_id``) and a cancellation
token that every layer below the controller observes.

All methods must be called from the event loop that runs the request.
"""

import asyncio
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, Optional, TypeVar
from uuid import uuid4

import structlog

from ..domain.errors import AbortedError

logger = structlog.get_logger()

T = TypeVar("T")

USER = "user"
SUPERSEDED = "superseded"


def new_correlation_id() -> str:
    return f"pending_{uuid4().hex}"


class CancellationToken:
    """One-shot cancellation flag that can interrupt awaits."""

    def __init__(self) -> None:
        self._cancelled = False
        self._reason: Optional[str] = None
        self._event: Optional[asyncio.Event] = None

    @property
    def cancelled(self) -> bool:
        return self._cancelled

    @property
    def reason(self) -> Optional[str]:
        return self._reason

    @property
    def superseded(self) -> bool:
        """True when a newer request replaced this one."""
        return self._reason == SUPERSEDED

    def cancel(self, reason: str = USER) -> bool:
        """Fire the token. Returns False if it had already fired."""
        if self._cancelled:
            return False
        self._cancelled = True
        self._reason = reason
        if self._event is not None:
            self._event.set()
        return True

    def raise_if_cancelled(self) -> None:
        if self._cancelled:
            raise AbortedError()

    def _get_event(self) -> asyncio.Event:
        if self._event is None:
            self._event = asyncio.Event()
            if self._cancelled:
                self._event.set()
        return self._event

    async def wait(self) -> None:
        """Block until the token fires."""
        await self._get_event().wait()

    async def guard(
        self,
        awaitable: Awaitable[T],
        discard: Optional[Callable[[Any], Awaitable[None]]] = None,
    ) -> T:
        """Await ``awaitable`` unless the token fires first.

        On cancellation the pending work is cancelled and ``AbortedError`` is
        raised. If the work completed in the same step as the cancellation,
        cancellation still wins and the result is passed to ``discard`` so it
        can release resources.
        """
        if self._cancelled:
            if asyncio.iscoroutine(awaitable):
                awaitable.close()
            raise AbortedError()

        work = asyncio.ensure_future(awaitable)
        waiter = asyncio.ensure_future(self._get_event().wait())
        try:
            await asyncio.wait({work, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            work.cancel()
            raise
        finally:
            waiter.cancel()

        if not self._cancelled:
            return work.result()

        if not work.done():
            work.cancel()
            await asyncio.gather(work, return_exceptions=True)
        elif not work.cancelled() and work.exception() is None and discard is not None:
            await discard(work.result())
        raise AbortedError()


@dataclass
class PendingRequest:
    """The single in-flight turn."""

    correlation_id: str
    token: CancellationToken = field(default_factory=CancellationToken)


class PendingRequestRegistry:
    """Tracks which correlation id, if any, is currently in flight."""

    def __init__(self) -> None:
        self._current: Optional[PendingRequest] = None

    @property
    def current(self) -> Optional[PendingRequest]:
        return self._current

    def is_current(self, correlation_id: str) -> bool:
        return self._current is not None and self._current.correlation_id == correlation_id

    def begin(self) -> PendingRequest:
        """Register a new request, superseding whatever was registered."""
        previous = self._current
        if previous is not None:
            previous.token.cancel(SUPERSEDED)
            logger.info("pending_request_superseded", correlation_id=previous.correlation_id)

        pending = PendingRequest(correlation_id=new_correlation_id())
        self._current = pending
        logger.debug("pending_request_registered", correlation_id=pending.correlation_id)
        return pending

    def end(self, correlation_id: str) -> bool:
        """Clear the registration only if it still belongs to ``correlation_id``.

        A late completion of a superseded request must not clear the newer
        request's registration.
        """
        if not self.is_current(correlation_id):
            logger.debug("pending_request_end_ignored", correlation_id=correlation_id)
            return False
        self._current = None
        return True

    def cancel_current(self, reason: str = USER) -> Optional[str]:
        """Cancel and clear the registration; return its correlation id."""
        pending = self._current
        if pending is None:
            return None
        self._current = None
        pending.token.cancel(reason)
        logger.info("pending_request_cancelled", correlation_id=pending.correlation_id, reason=reason)
        return pending.correlation_id

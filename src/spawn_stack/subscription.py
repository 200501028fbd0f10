"""Stream subscriptions and their cancellation.

A ``Subscription`` is one consumer's registration for line events of a
``StackProcess``. Closing it is synchronous, idempotent and never raises;
when it was the last consumer of the process, the process is cancelled.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Optional

from .types import LineEvent

if TYPE_CHECKING:
    from .controller import StackProcess

__all__ = [
    "CompleteCallback",
    "ErrorCallback",
    "NextCallback",
    "Subscription",
]

logger = logging.getLogger(__name__)

NextCallback = Callable[[LineEvent], None]
ErrorCallback = Callable[[BaseException], None]
CompleteCallback = Callable[[], None]


class Subscription:
    """Registration of one stream consumer.

    Attributes:
        closed: True once unsubscribed or after a terminal notification
    """

    def __init__(
        self,
        source: StackProcess,
        on_next: Optional[NextCallback] = None,
        on_error: Optional[ErrorCallback] = None,
        on_complete: Optional[CompleteCallback] = None,
    ) -> None:
        self._source = source
        self._on_next = on_next
        self._on_error = on_error
        self._on_complete = on_complete
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def unsubscribe(self) -> None:
        """Stop receiving events; cancels the process if nobody else listens.

        Events already delivered stay delivered. Calling this on a closed
        subscription does nothing.
        """
        if self._closed:
            return
        self._closed = True
        logger.debug(f"Subscription closed by consumer: {self._source.command}")
        self._source._release_subscription(self)

    cancel = unsubscribe

    # Called by StackProcess

    def _next(self, event: LineEvent) -> None:
        if not self._closed and self._on_next is not None:
            self._on_next(event)

    def _error(self, error: BaseException) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_error is not None:
            self._on_error(error)

    def _complete(self) -> None:
        if self._closed:
            return
        self._closed = True
        if self._on_complete is not None:
            self._on_complete()

    def __repr__(self) -> str:
        return f"Subscription(command={self._source.command!r}, closed={self._closed})"

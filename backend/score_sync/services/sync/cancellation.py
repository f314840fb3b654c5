"""
Cooperative cancellation for a running flow.
"""

import asyncio
import logging
from typing import Optional

from score_sync.core.errors import FlowCancelledError


logger = logging.getLogger(__name__)


class CancelToken:
    """
    Cancellation signal checked at safe points.

    Waiting operations (progress polling, verification back-off) stop as
    soon as the token is set. Writes already sent are allowed to finish;
    the token is only honoured between records.
    """

    def __init__(self):
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "Flow cancelled by host") -> None:
        if not self._event.is_set():
            self.reason = reason
            self._event.set()
            logger.info(f"Cancellation requested: {reason}")

    def raise_if_cancelled(self) -> None:
        if self._event.is_set():
            raise FlowCancelledError(self.reason or "Flow cancelled")

    async def sleep(self, seconds: float) -> None:
        """Sleep for ``seconds`` unless cancelled first."""
        self.raise_if_cancelled()
        if seconds <= 0:
            await asyncio.sleep(0)
            return
        try:
            await asyncio.wait_for(self._event.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            return
        self.raise_if_cancelled()

"""
Transport ownership token.

The serial monitor and the flash orchestrator share one DeviceHandle. Only
the current owner may read or write it; ownership is handed over by
releasing the token, never by flags or fixed delays.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from collections import deque
from typing import AsyncIterator, Deque, Optional

logger = logging.getLogger(__name__)


class TransportOwnership:
    """An asyncio.Lock that remembers who holds it."""

    def __init__(self) -> None:
        self._lock = asyncio.Lock()
        self.owner: Optional[str] = None
        self.history: Deque[str] = deque(maxlen=64)

    @property
    def held(self) -> bool:
        return self._lock.locked()

    @asynccontextmanager
    async def hold(self, owner: str) -> AsyncIterator[None]:
        """Wait for the token, hold it for the block, then release it."""
        async with self._lock:
            self.owner = owner
            self.history.append(owner)
            logger.debug(f"Transport acquired by {owner}")
            try:
                yield
            finally:
                self.owner = None
                logger.debug(f"Transport released by {owner}")

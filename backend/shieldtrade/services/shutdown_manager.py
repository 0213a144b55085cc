"""
Graceful Shutdown Manager

Tracks transaction submissions that are in flight so the engine never stops
between "submitted on-chain" and "recorded in the stores".
"""

import asyncio
import logging
from datetime import datetime
from typing import Optional

logger = logging.getLogger(__name__)


class ShutdownInProgressError(RuntimeError):
    pass


class ShutdownManager:
    """
    Usage:
        async with shutdown_manager.transaction_in_flight("dca:<order>:3"):
            signature = await ledger.sign_and_submit(...)
            await store.record(...)

        await shutdown_manager.prepare_shutdown(timeout=60)
    """

    def __init__(self):
        self._shutting_down = False
        self._in_flight: dict = {}  # label -> started_at
        self._lock = asyncio.Lock()
        self._idle = asyncio.Event()
        self._idle.set()
        self._shutdown_requested_at: Optional[datetime] = None

    @property
    def is_shutting_down(self) -> bool:
        return self._shutting_down

    @property
    def in_flight_count(self) -> int:
        return len(self._in_flight)

    async def _begin(self, label: str):
        async with self._lock:
            if self._shutting_down:
                raise ShutdownInProgressError(f"Cannot start {label} - shutdown in progress")
            if label in self._in_flight:
                raise RuntimeError(f"{label} is already in flight")
            self._in_flight[label] = datetime.utcnow()
            self._idle.clear()
            logger.debug(f"Started {label} - in-flight count: {len(self._in_flight)}")

    async def _end(self, label: str):
        async with self._lock:
            self._in_flight.pop(label, None)
            logger.debug(f"Finished {label} - in-flight count: {len(self._in_flight)}")
            if not self._in_flight:
                self._idle.set()

    class TransactionInFlight:
        def __init__(self, manager: "ShutdownManager", label: str):
            self.manager = manager
            self.label = label

        async def __aenter__(self):
            await self.manager._begin(self.label)
            return self

        async def __aexit__(self, exc_type, exc_val, exc_tb):
            await self.manager._end(self.label)
            return False

    def transaction_in_flight(self, label: str) -> "TransactionInFlight":
        return self.TransactionInFlight(self, label)

    async def prepare_shutdown(self, timeout: float = 60.0) -> dict:
        """
        Refuse new submissions and wait up to timeout seconds for in-flight ones.

        Returns:
            dict with ready, in_flight (labels still running), waited_seconds, message
        """
        self._shutting_down = True
        self._shutdown_requested_at = datetime.utcnow()
        logger.info(f"Shutdown requested - {self.in_flight_count} transactions in flight")

        if not self._in_flight:
            return {"ready": True, "in_flight": [], "waited_seconds": 0, "message": "No in-flight transactions"}

        try:
            await asyncio.wait_for(self._idle.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            pending = sorted(self._in_flight)
            logger.warning(f"Shutdown timeout after {timeout}s - still in flight: {', '.join(pending)}")
            return {
                "ready": False,
                "in_flight": pending,
                "waited_seconds": timeout,
                "message": f"Timeout: {len(pending)} transactions still in flight after {timeout}s",
            }

        waited = (datetime.utcnow() - self._shutdown_requested_at).total_seconds()
        logger.info(f"All in-flight transactions finished after {waited:.1f}s")
        return {
            "ready": True,
            "in_flight": [],
            "waited_seconds": waited,
            "message": f"All transactions finished after {waited:.1f}s",
        }

    def cancel_shutdown(self):
        self._shutting_down = False
        self._shutdown_requested_at = None
        logger.info("Shutdown cancelled")

    def get_status(self) -> dict:
        return {
            "shutting_down": self._shutting_down,
            "in_flight": sorted(self._in_flight),
            "shutdown_requested_at": self._shutdown_requested_at.isoformat() if self._shutdown_requested_at else None,
        }

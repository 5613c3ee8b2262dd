# =============================================================================
# File: sms_bridge/infra/reliability/keyed_lock.py
# Description: In-process per-key mutual exclusion for asyncio tasks
# =============================================================================

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Dict, Any, AsyncIterator, Optional

logger = logging.getLogger("sms_bridge.keyed_lock")


class LockAcquisitionError(Exception):
    """Failed to acquire a keyed lock within the timeout"""
    pass


@dataclass
class _LockSlot:
    lock: asyncio.Lock
    holders: int = 0  # tasks holding or waiting for this key


class KeyedLock:
    """
    One asyncio.Lock per key, created on demand and dropped when no task
    holds or waits for it.

    Usage:
        locks = KeyedLock("room_resolution")
        async with locks.lock_context(source_id):
            ...
    """

    def __init__(self, namespace: str = "keyed_lock"):
        self.namespace = namespace
        self._slots: Dict[str, _LockSlot] = {}
        self.acquisitions = 0
        self.contended = 0
        self.timeouts = 0

    def _checkout(self, key: str) -> _LockSlot:
        slot = self._slots.get(key)
        if slot is None:
            slot = _LockSlot(lock=asyncio.Lock())
            self._slots[key] = slot
        slot.holders += 1
        return slot

    def _checkin(self, key: str, slot: _LockSlot) -> None:
        slot.holders -= 1
        if slot.holders <= 0 and self._slots.get(key) is slot:
            del self._slots[key]

    @asynccontextmanager
    async def lock_context(self, key: str, timeout_seconds: Optional[float] = None) -> AsyncIterator[None]:
        """
        Hold the lock for `key` for the duration of the block.

        Raises:
            LockAcquisitionError: timeout_seconds elapsed while waiting
        """
        slot = self._checkout(key)
        if slot.lock.locked():
            self.contended += 1
            logger.debug(f"[{self.namespace}] waiting for lock on {key}")

        started = time.monotonic()
        try:
            if timeout_seconds is None:
                await slot.lock.acquire()
            else:
                await asyncio.wait_for(slot.lock.acquire(), timeout=timeout_seconds)
        except asyncio.TimeoutError:
            self.timeouts += 1
            self._checkin(key, slot)
            raise LockAcquisitionError(
                f"[{self.namespace}] timed out after {timeout_seconds}s waiting for {key}"
            )
        except BaseException:
            self._checkin(key, slot)
            raise

        self.acquisitions += 1
        wait_ms = (time.monotonic() - started) * 1000
        if wait_ms > 1000:
            logger.info(f"[{self.namespace}] lock on {key} acquired after {wait_ms:.0f}ms")

        try:
            yield
        finally:
            slot.lock.release()
            self._checkin(key, slot)

    def is_locked(self, key: str) -> bool:
        slot = self._slots.get(key)
        return bool(slot and slot.lock.locked())

    def __len__(self) -> int:
        return len(self._slots)

    def get_stats(self) -> Dict[str, Any]:
        return {
            "namespace": self.namespace,
            "active_keys": len(self._slots),
            "acquisitions": self.acquisitions,
            "contended": self.contended,
            "timeouts": self.timeouts,
        }

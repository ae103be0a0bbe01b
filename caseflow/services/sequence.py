"""
CaseFlow Engine - Sequence Allocator

Human-readable display numbers: MNG-2025-0001 for cases, TKT-MNG-2025-0001
for tickets. Each (prefix, location, year) scope has its own counter.

Numbers come from an atomic increment on a counter keyed by scope, never
from "read max, add one". The counter store is anything exposing
`increment_counter(scope) -> int`: the repository itself (standalone
allocation) or a unit of work (allocation inside the create transaction, so
a rolled back create does not burn a number).
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Optional

from .errors import SequenceExhausted

logger = logging.getLogger(__name__)


class KeyedLock:
    """
    One asyncio.Lock per key, alive only while someone holds or waits on it.

        async with locks.hold(work_item_id):
            ...

    acquire()/release() are for holders that span several calls (a unit of
    work keeping a counter scope until commit).
    """

    def __init__(self):
        self._locks: Dict[str, asyncio.Lock] = {}
        self._users: Dict[str, int] = {}

    async def acquire(self, key: str):
        lock = self._locks.get(key)
        if lock is None:
            lock = self._locks[key] = asyncio.Lock()
        self._users[key] = self._users.get(key, 0) + 1
        try:
            await lock.acquire()
        except BaseException:
            self._drop(key)
            raise

    def release(self, key: str):
        self._locks[key].release()
        self._drop(key)

    def _drop(self, key: str):
        self._users[key] -= 1
        if self._users[key] == 0:
            del self._users[key]
            del self._locks[key]

    @asynccontextmanager
    async def hold(self, key: str):
        await self.acquire(key)
        try:
            yield
        finally:
            self.release(key)

    def __len__(self) -> int:
        return len(self._locks)


def scope_key(location_code: str, year: int, prefix: str = "") -> str:
    location_code = location_code.strip().upper()
    if not location_code:
        raise ValueError("location_code is required")
    base = f"{location_code}-{year}"
    return f"{prefix}-{base}" if prefix else base


class SequenceAllocator:
    def __init__(self, counter=None, pad_width: int = 4, max_value: int = 999999):
        self.counter = counter
        self.pad_width = pad_width
        self.max_value = max_value

    def format(self, scope: str, value: int) -> str:
        return f"{scope}-{value:0{self.pad_width}d}"

    async def next(
        self,
        location_code: str,
        year: int,
        prefix: str = "",
        counter=None,
    ) -> str:
        """
        Allocate the next display number for the scope.

        Args:
            location_code: Location short code, e.g. "MNG"
            year: Calendar year of creation
            prefix: Kind prefix ("" for cases, "TKT" for tickets)
            counter: Override the counter store (a unit of work)

        Raises:
            SequenceExhausted: when the scope passes max_value
        """
        store = counter if counter is not None else self.counter
        if store is None:
            raise RuntimeError("SequenceAllocator has no counter store")

        scope = scope_key(location_code, year, prefix)
        value = await store.increment_counter(scope)
        if value > self.max_value:
            logger.error(f"Sequence exhausted for scope {scope} at {value}")
            raise SequenceExhausted(
                f"Display numbers exhausted for {scope}",
                {"scope": scope, "max_value": self.max_value},
            )
        return self.format(scope, value)

    @staticmethod
    def parse(display_number: str) -> Optional[Dict[str, object]]:
        """Split a display number back into scope parts. None if malformed."""
        parts = display_number.split("-")
        if len(parts) == 3:
            prefix, (location_code, year, number) = "", parts
        elif len(parts) == 4:
            prefix, location_code, year, number = parts
        else:
            return None
        if not (year.isdigit() and number.isdigit()):
            return None
        return {
            "prefix": prefix,
            "location_code": location_code,
            "year": int(year),
            "number": int(number),
        }

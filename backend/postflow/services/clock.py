from __future__ import annotations

import asyncio
from datetime import datetime, timezone


class SystemClock:
    """Wall clock. Swap for a fake in tests."""

    def now(self) -> datetime:
        return datetime.now(timezone.utc)

    async def sleep(self, seconds: float) -> None:
        if seconds > 0:
            await asyncio.sleep(seconds)

    async def sleep_until(self, moment: datetime) -> None:
        await self.sleep((moment - self.now()).total_seconds())

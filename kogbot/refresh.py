from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime, time, timedelta, timezone
from typing import Callable, List, Optional
from zoneinfo import ZoneInfo

from .kog import KogError
from .stores import MapCatalog, PlayerStore
from .workflow import KogLike

LOGGER = logging.getLogger(__name__)


def next_midnight(now: datetime) -> datetime:
    return datetime.combine(now.date() + timedelta(days=1), time.min, tzinfo=now.tzinfo)


def seconds_until_next_midnight(now: datetime) -> float:
    # Compare in UTC so a DST change during the night is counted correctly.
    target = next_midnight(now)
    delta = target.astimezone(timezone.utc) - now.astimezone(timezone.utc)
    return max(delta.total_seconds(), 0.0)


@dataclass
class RefreshSummary:
    updated: int = 0
    skipped: int = 0
    failures: List[str] = field(default_factory=list)

    def __str__(self) -> str:
        text = f"Updated {self.updated} players, skipped: {self.skipped}, failures: {len(self.failures)}"
        if self.failures:
            text += f" ({', '.join(self.failures)})"
        return text


class RefreshScheduler:
    def __init__(
        self,
        players: PlayerStore,
        catalog: MapCatalog,
        provider: KogLike,
        concurrency: int = 5,
        timezone_name: Optional[str] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.players = players
        self.catalog = catalog
        self.provider = provider
        self.concurrency = max(1, concurrency)
        self.tz = ZoneInfo(timezone_name) if timezone_name else None
        self._clock = clock

    def now(self) -> datetime:
        if self._clock is not None:
            return self._clock()
        if self.tz is not None:
            return datetime.now(self.tz)
        return datetime.now()

    async def _refresh_player(
        self, username: str, semaphore: asyncio.Semaphore, summary: RefreshSummary
    ):
        async with semaphore:
            try:
                snapshot = await self.provider.fetch_player(username)
                if self.players.replace_snapshot(username, snapshot):
                    summary.updated += 1
                    LOGGER.debug("Player %s data has been updated", username)
                else:
                    summary.skipped += 1
                    LOGGER.info("Player %s unregistered during refresh; skipped", username)
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                summary.failures.append(username)
                LOGGER.warning("Failed refreshing player %s: %s", username, exc)

    async def update_all_user_data(self) -> RefreshSummary:
        summary = RefreshSummary()
        usernames = self.players.usernames()
        semaphore = asyncio.Semaphore(self.concurrency)
        await asyncio.gather(
            *(self._refresh_player(name, semaphore, summary) for name in usernames)
        )
        LOGGER.info("Player refresh: %s", summary)
        return summary

    async def update_map_data(self) -> int:
        maps = await self.provider.fetch_all_maps()
        written = self.catalog.upsert(maps)
        LOGGER.info("Map catalog refreshed: %s maps", written)
        return written

    async def refresh_all(self):
        await self.update_all_user_data()
        try:
            await self.update_map_data()
        except KogError as exc:
            LOGGER.warning("Map catalog refresh failed: %s", exc)

    async def run(self):
        while True:
            now = self.now()
            delay = seconds_until_next_midnight(now)
            LOGGER.info("Next KoG data refresh at %s", next_midnight(now).isoformat())
            await asyncio.sleep(delay)
            LOGGER.info("Midnight reached; refreshing KoG data")
            try:
                await self.refresh_all()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                LOGGER.exception("Nightly refresh failed: %s", exc)

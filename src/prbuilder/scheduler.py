from __future__ import annotations

import asyncio
import logging
from pathlib import Path
from typing import Dict, Iterable, List, Optional

import aiohttp
from aiolimiter import AsyncLimiter

from prbuilder.config import SETTINGS, Settings
from prbuilder.events import EventBroadcaster
from prbuilder.model import DaemonConfig
from prbuilder.providers.bitbucket import BitbucketProvider
from prbuilder.providers.teamcity import TeamCityProvider
from prbuilder.store import create_store
from prbuilder.watcher import RepositoryWatcher

logger = logging.getLogger("prbuilder")


class WatchScheduler:
    """
    Runs one independent loop per watcher. A loop runs a full pass, then
    sleeps for the delay the pass asked for, so passes for the same
    repository never overlap.
    """

    def __init__(
        self,
        watchers: Iterable[RepositoryWatcher],
        *,
        grace_seconds: float = 10.0,
    ):
        self.watchers: Dict[str, RepositoryWatcher] = {
            watcher.repository: watcher for watcher in watchers
        }
        self.grace_seconds = max(0.0, float(grace_seconds))
        self._tasks: Dict[str, asyncio.Task] = {}
        self._stop = asyncio.Event()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def start(self) -> None:
        for name, watcher in self.watchers.items():
            if name in self._tasks:
                continue
            logger.info("Starting %s", watcher)
            self._tasks[name] = asyncio.create_task(
                self._run_watcher(watcher), name=f"watch-{name}"
            )

    def stop(self) -> None:
        if not self._stop.is_set():
            logger.info("Stop requested")
        self._stop.set()

    async def wait_stopped(self) -> None:
        await self._stop.wait()

    def halted(self) -> List[RepositoryWatcher]:
        return [watcher for watcher in self.watchers.values() if watcher.halted]

    @property
    def all_halted(self) -> bool:
        return bool(self.watchers) and len(self.halted()) == len(self.watchers)

    async def run(self) -> None:
        """Returns once stopped, or once every watcher has halted."""
        self.start()
        tasks = list(self._tasks.values())
        if not tasks:
            return
        await asyncio.gather(*tasks, return_exceptions=True)

    async def shutdown(self, grace_seconds: Optional[float] = None) -> None:
        grace = self.grace_seconds if grace_seconds is None else grace_seconds
        self.stop()
        tasks = list(self._tasks.values())
        self._tasks.clear()
        if tasks:
            _, pending = await asyncio.wait(tasks, timeout=grace)
            if pending:
                logger.warning(
                    "Cancelling %d watcher(s) still busy after %.1fs",
                    len(pending),
                    grace,
                )
            for task in pending:
                task.cancel()
            if pending:
                await asyncio.gather(*pending, return_exceptions=True)

        for watcher in self.watchers.values():
            watcher.close()

    async def _run_watcher(self, watcher: RepositoryWatcher) -> None:
        while not self._stop.is_set():
            try:
                result = await watcher.run_once()
                delay = result.delay
            except asyncio.CancelledError:
                raise
            except Exception as exc:  # noqa: BLE001
                logger.error("%s: pass crashed", watcher, exc_info=True)
                delay = watcher.on_unexpected_error(exc)

            if delay is None:
                logger.error("%s stopped polling: %s", watcher, watcher.halt_reason)
                return
            if await self._wait_for_stop(delay):
                return

    async def _wait_for_stop(self, delay: float) -> bool:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return False
        return True


def create_watchers(
    config: DaemonConfig,
    session: aiohttp.ClientSession,
    *,
    settings: Settings = SETTINGS,
    broadcaster: Optional[EventBroadcaster] = None,
) -> List[RepositoryWatcher]:
    broadcaster = broadcaster if broadcaster is not None else EventBroadcaster()
    limiters: Dict[str, AsyncLimiter] = {}
    watchers = []
    for watch in config.watches:
        # one limiter per host, shared by all watchers talking to it
        source = BitbucketProvider(
            session,
            watch.source,
            limiter=_limiter_for(limiters, watch.source.base_url, settings),
            timeout=settings.HTTP_TIMEOUT,
        )
        builds = TeamCityProvider(
            session,
            watch.build,
            limiter=_limiter_for(limiters, watch.build.base_url, settings),
            timeout=settings.HTTP_TIMEOUT,
        )
        state_dir = None
        if settings.STATE_DIR is not None:
            state_dir = Path(settings.STATE_DIR)
        watchers.append(
            RepositoryWatcher(
                watch,
                source,
                builds,
                store=create_store(watch.name, state_dir),
                broadcaster=broadcaster,
                dry_run=settings.DRY_RUN,
            )
        )
    return watchers


def _limiter_for(
    limiters: Dict[str, AsyncLimiter], base_url: str, settings: Settings
) -> AsyncLimiter:
    key = base_url.rstrip("/")
    if key not in limiters:
        limiters[key] = AsyncLimiter(settings.API_RATE_LIMIT, 1)
    return limiters[key]

import asyncio
import logging
import os
from collections.abc import Callable
from dataclasses import dataclass

from osnovci.core.kv_store import KeyValueStore
from osnovci.core.lockout import AccountLockout
from osnovci.core.metrics import increment_counter
from osnovci.db.session import SessionLocal
from osnovci.services.stranger_danger import expire_stale_link_requests

logger = logging.getLogger(__name__)

SWEEPER_INTERVAL_SECONDS = int(os.getenv("SWEEPER_INTERVAL_SECONDS", "600"))


def sweeper_enabled() -> bool:
    return os.getenv("SWEEPER_ENABLED", "true").strip().lower() in {"1", "true", "yes", "on"}


@dataclass
class SweepJob:
    name: str
    run: Callable[[], int]


class PeriodicSweeper:
    """Background task that runs cleanup jobs on a fixed interval.

    Owned by the application lifespan: ``start()`` on startup, ``stop()`` on
    shutdown. A failing job is logged and the loop carries on.
    """

    def __init__(self, jobs: list[SweepJob], *, interval_seconds: int = SWEEPER_INTERVAL_SECONDS) -> None:
        self.jobs = jobs
        self.interval_seconds = max(1, interval_seconds)
        self._stop_event: asyncio.Event | None = None
        self._task: asyncio.Task | None = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> dict[str, int | None]:
        results: dict[str, int | None] = {}
        for job in self.jobs:
            try:
                results[job.name] = await asyncio.to_thread(job.run)
            except Exception:
                increment_counter("sweeper_failures_total", job=job.name)
                logger.exception("Sweep job failed job=%s", job.name)
                results[job.name] = None
        return results

    async def _loop(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            await self.run_once()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                pass

    def start(self) -> None:
        if self.running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._loop(self._stop_event))
        logger.info("Sweeper started interval_seconds=%s jobs=%s", self.interval_seconds, [j.name for j in self.jobs])

    async def stop(self, timeout: float = 3) -> None:
        if self._stop_event is not None:
            self._stop_event.set()
        if self._task is not None:
            try:
                await asyncio.wait_for(self._task, timeout=timeout)
            except (asyncio.TimeoutError, Exception):
                self._task.cancel()
        self._task = None
        self._stop_event = None
        logger.info("Sweeper stopped")


def _expire_link_requests() -> int:
    db = SessionLocal()
    try:
        return expire_stale_link_requests(db)
    finally:
        db.close()


def build_default_sweeper(store: KeyValueStore) -> PeriodicSweeper:
    lockout = AccountLockout(store)

    def _cleanup_lockouts() -> int:
        cleaned = lockout.cleanup_expired_lockouts()
        if cleaned:
            increment_counter("lockout_cleanup_total", value=cleaned)
        return cleaned

    return PeriodicSweeper(
        [
            SweepJob("lockout_cleanup", _cleanup_lockouts),
            SweepJob("link_request_expiry", _expire_link_requests),
        ]
    )

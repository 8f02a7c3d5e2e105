#!/usr/bin/env python3
"""
Clustering Scheduler - keeps every owner's theme clusters fresh off the hot path.

Clustering is batch work and never part of a conversational turn:
1. Periodic scan - which owners have memory newer than their stored clusters?
2. Nightly batch (default 03:00, +/- a few minutes) - recluster those owners one by one
3. Manual trigger from the API

One owner failing does not stop the batch; its error is recorded and it stays
waiting for the next run. The loop lives on its own event loop in a daemon
thread, since clustering needs no oracle and no request context.
"""

import asyncio
import json
import threading
import time
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

MINUTES_PER_DAY = 24 * 60


def _known_fields(cls, data: dict) -> dict:
    names = {f.name for f in fields(cls)}
    return {k: v for k, v in data.items() if k in names}


@dataclass
class ScheduleConfig:
    """When and how often the clustering batch runs."""
    scan_interval_seconds: int = 3600
    run_at_hour: int = 3
    run_at_minute: int = 0
    window_minutes: int = 5
    tick_seconds: int = 60
    enabled: bool = True
    cluster_on_startup: bool = False

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "ScheduleConfig":
        return cls(**_known_fields(cls, data))

    @property
    def run_at_minutes(self) -> int:
        return self.run_at_hour * 60 + self.run_at_minute


@dataclass
class BatchState:
    """What the scheduler remembers across restarts."""
    last_scan: float = 0
    last_batch_at: float = 0
    last_batch_day: str = ""  # YYYY-MM-DD, local
    owners_waiting: list[str] = field(default_factory=list)
    in_progress: bool = False
    last_result: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict) -> "BatchState":
        return cls(**_known_fields(cls, data))


class ClusteringScheduler:
    """
    Runs owner reclustering on a daily schedule.

    set_callbacks() wires it to the engine:
      scan_owners()              -> owner ids whose clusters are stale
      cluster_owner(owner_id)    -> awaitable; recluster one owner, return its ClusterSet
    """

    def __init__(
        self,
        state_file: Path,
        config: Optional[ScheduleConfig] = None,
        on_status: Optional[Callable[[str], None]] = None,
    ):
        self.state_file = Path(state_file)
        self.config = config or ScheduleConfig()
        self.state = BatchState()
        self.on_status = on_status or print
        self._active = False
        self._thread: Optional[threading.Thread] = None

        self._scan_owners: Optional[Callable[[], list[str]]] = None
        self._cluster_owner: Optional[Callable[[str], Awaitable[Any]]] = None

        self._restore(keep_config=config is not None)

    # ── Persistence ───────────────────────────────────────────────────────────

    def _restore(self, keep_config: bool = False):
        if not self.state_file.exists():
            return
        try:
            with open(self.state_file) as f:
                saved = json.load(f)
        except (OSError, ValueError) as e:
            self.on_status(f"[Scheduler] Ignoring unreadable state file: {e}")
            return
        self.state = BatchState.from_dict(saved.get("state", {}))
        # A batch cut short by shutdown is not in progress any more
        self.state.in_progress = False
        if not keep_config and "config" in saved:
            self.config = ScheduleConfig.from_dict(saved["config"])

    def _persist(self):
        try:
            self.state_file.parent.mkdir(parents=True, exist_ok=True)
            with open(self.state_file, "w") as f:
                json.dump({"state": self.state.to_dict(), "config": self.config.to_dict()}, f, indent=2)
        except OSError as e:
            self.on_status(f"[Scheduler] Could not save state: {e}")

    def set_callbacks(
        self,
        scan_owners: Callable[[], list[str]],
        cluster_owner: Callable[[str], Awaitable[Any]],
    ):
        self._scan_owners = scan_owners
        self._cluster_owner = cluster_owner

    # ── Schedule ──────────────────────────────────────────────────────────────

    def in_run_window(self, now: Optional[datetime] = None) -> bool:
        """True within window_minutes of the run time, across midnight too."""
        now = now or datetime.now()
        gap = abs(now.hour * 60 + now.minute - self.config.run_at_minutes)
        return min(gap, MINUTES_PER_DAY - gap) <= self.config.window_minutes

    def ran_today(self, now: Optional[datetime] = None) -> bool:
        return self.state.last_batch_day == (now or datetime.now()).strftime("%Y-%m-%d")

    def next_run(self, now: Optional[datetime] = None) -> datetime:
        now = now or datetime.now()
        candidate = now.replace(
            hour=self.config.run_at_hour, minute=self.config.run_at_minute, second=0, microsecond=0
        )
        return candidate if candidate > now else candidate + timedelta(days=1)

    # ── Work ──────────────────────────────────────────────────────────────────

    async def scan(self) -> list[str]:
        """Refresh the list of owners waiting for clustering. Store reads only."""
        self.state.last_scan = time.time()
        waiting: list[str] = []
        if self._scan_owners is not None:
            try:
                waiting = list(self._scan_owners())
            except Exception as e:
                self.on_status(f"[Scheduler] Scan failed: {e}")
        self.state.owners_waiting = waiting
        self._persist()
        self.on_status(f"[Scheduler] {len(waiting)} owner(s) waiting for clustering")
        return waiting

    async def run_batch(self) -> dict:
        """Recluster every waiting owner; owners that fail stay waiting."""
        if self.state.in_progress:
            self.on_status("[Scheduler] Batch already in progress")
            return {"status": "already_running"}

        self.state.in_progress = True
        self._persist()
        started = time.time()
        clustered: dict[str, int] = {}
        failed: dict[str, str] = {}

        try:
            for owner_id in list(self.state.owners_waiting):
                if self._cluster_owner is None:
                    break
                try:
                    cluster_set = await self._cluster_owner(owner_id)
                    clustered[owner_id] = len(getattr(cluster_set, "clusters", []))
                except Exception as e:
                    failed[owner_id] = str(e)
                    self.on_status(f"[Scheduler] Clustering failed for {owner_id}: {e}")
        finally:
            self.state.in_progress = False
            self.state.last_batch_at = time.time()
            self.state.last_batch_day = datetime.now().strftime("%Y-%m-%d")
            self.state.owners_waiting = sorted(failed)
            self.state.last_result = {"clustered": clustered, "failed": failed}
            self._persist()

        status = "completed" if not failed else "partial"
        self.on_status(
            f"[Scheduler] Batch {status}: {len(clustered)} clustered, {len(failed)} failed "
            f"in {time.time() - started:.1f}s"
        )
        return {"status": status, "clustered": clustered, "failed": failed}

    async def trigger_now(self) -> dict:
        self.on_status("[Scheduler] Manual clustering run")
        await self.scan()
        return await self.run_batch()

    # ── Loop ──────────────────────────────────────────────────────────────────

    async def _tick(self, now: datetime):
        if time.time() - self.state.last_scan >= self.config.scan_interval_seconds:
            await self.scan()
        if self.config.enabled and self.in_run_window(now) and not self.ran_today(now):
            # Rescan so the batch sees owners written since the last periodic scan
            if await self.scan():
                self.on_status(f"[Scheduler] Nightly batch at {now:%H:%M}")
                await self.run_batch()

    async def _loop(self):
        self.on_status("[Scheduler] Loop started")
        if self.config.enabled and self.config.cluster_on_startup and not self.ran_today():
            if await self.scan():
                await self.run_batch()

        while self._active:
            try:
                await self._tick(datetime.now())
            except asyncio.CancelledError:
                break
            except Exception as e:
                self.on_status(f"[Scheduler] Tick failed: {e}")
            await asyncio.sleep(self.config.tick_seconds)

        self.on_status("[Scheduler] Loop stopped")

    def start(self):
        """Run the loop in a daemon thread on its own event loop."""
        if self._active:
            return
        self._active = True

        def worker():
            loop = asyncio.new_event_loop()
            asyncio.set_event_loop(loop)
            try:
                loop.run_until_complete(self._loop())
            finally:
                loop.close()

        self._thread = threading.Thread(target=worker, name="clustering-scheduler", daemon=True)
        self._thread.start()
        self.on_status("[Scheduler] Started")

    def stop(self):
        self._active = False
        self.on_status("[Scheduler] Stopping")

    # ── API surface ───────────────────────────────────────────────────────────

    def get_status(self) -> dict:
        def iso(ts: float) -> Optional[str]:
            return datetime.fromtimestamp(ts).isoformat() if ts else None

        return {
            "enabled": self.config.enabled,
            "in_progress": self.state.in_progress,
            "owners_waiting": list(self.state.owners_waiting),
            "last_scan": iso(self.state.last_scan),
            "last_batch": iso(self.state.last_batch_at),
            "last_result": self.state.last_result,
            "run_at": f"{self.config.run_at_hour:02d}:{self.config.run_at_minute:02d}",
            "next_run": self.next_run().isoformat(),
            "scan_interval_minutes": self.config.scan_interval_seconds // 60,
        }

    def reschedule(self, hour: int, minute: int = 0):
        self.config.run_at_hour = hour
        self.config.run_at_minute = minute
        self._persist()
        self.on_status(f"[Scheduler] Nightly batch moved to {hour:02d}:{minute:02d}")

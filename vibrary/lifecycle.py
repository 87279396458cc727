"""
Lifecycle manager: age-based retention and quota pressure relief.

Each maintenance cycle walks a small state machine::

    IDLE -> EVALUATING -> SKIPPED | AGE_EVICTING | QUOTA_EVICTING -> IDLE

Both eviction paths remove records from ``history`` only.  Playlist
members (the protected set, computed once at the start of a cycle) are
never evicted, and the library partition is never written; its size is
re-read after eviction and a change raises :class:`InvariantViolation`.

Two timers drive the manager from background threads: the age cycle
(hourly by default, guarded by the minimum interval) and the faster quota
poll.  Within one process the two paths take turns; against other
processes sharing the backend they may race, and each path is
independently safe.
"""

import logging
import math
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Mapping, Optional

from .errors import InvariantViolation, VibraryError
from .store import RecordStore
from .types import Clock, VideoRecord, now_ms

logger = logging.getLogger(__name__)

DAY_MS = 86_400_000
MINUTE_MS = 60_000


class CycleState(Enum):
    IDLE = "idle"
    EVALUATING = "evaluating"
    SKIPPED = "skipped"
    AGE_EVICTING = "age-evicting"
    QUOTA_EVICTING = "quota-evicting"


@dataclass
class CycleResult:
    """Outcome of one maintenance cycle."""
    state: CycleState                   # terminal state the cycle reached
    reason: str = ""
    evicted: list[str] = field(default_factory=list)
    repaired: dict[str, int] = field(default_factory=dict)

    @property
    def skipped(self) -> bool:
        return self.state is CycleState.SKIPPED


def quota_eviction_count(unprotected: int, min_evict: int = 10, fraction: float = 0.3) -> int:
    """Records to evict under quota pressure: max(min_evict, floor(fraction*U)), clamped to U."""
    return min(unprotected, max(min_evict, math.floor(fraction * unprotected)))


class LifecycleManager:
    """
    Runs the age and quota eviction paths against a RecordStore.

    Args:
        store: Record store to maintain
        clock: Millisecond clock (defaults to wall time)
        min_interval_minutes: Minimum time between evaluated age cycles
        quota_high_water: Fraction of the backend quota that triggers eviction
        quota_min_evict: Minimum records evicted per quota cycle
        quota_evict_fraction: Fraction of unprotected history evicted per quota cycle
    """

    def __init__(
        self,
        store: RecordStore,
        *,
        clock: Optional[Clock] = None,
        min_interval_minutes: int = 60,
        quota_high_water: float = 0.9,
        quota_min_evict: int = 10,
        quota_evict_fraction: float = 0.3,
    ) -> None:
        self._store = store
        self._clock: Clock = clock or now_ms
        self._min_interval_ms = min_interval_minutes * MINUTE_MS
        self._quota_high_water = quota_high_water
        self._quota_min_evict = quota_min_evict
        self._quota_evict_fraction = quota_evict_fraction
        self._state = CycleState.IDLE
        self._state_lock = threading.Lock()

    @property
    def state(self) -> CycleState:
        return self._state

    def _enter(self, state: CycleState) -> None:
        logger.debug("Lifecycle state: %s -> %s", self._state.value, state.value)
        self._state = state

    # -------------------------------------------------------------------------
    # Age path
    # -------------------------------------------------------------------------

    def run_cycle(self, *, force: bool = False) -> CycleResult:
        """
        Run one age-based maintenance cycle.

        Skipped when retention is off, or when the last cleanup was less
        than the minimum interval ago (unless ``force``).  Otherwise evicts
        unprotected history records older than the retention window,
        records the cleanup time, and repairs library/playlist invariants.

        Raises:
            BackendUnavailable: the cycle was aborted; evictions already
                written stay written
            InvariantViolation: the library changed size during eviction
        """
        with self._state_lock:
            self._enter(CycleState.EVALUATING)
            try:
                return self._age_cycle(force)
            finally:
                self._enter(CycleState.IDLE)

    def _age_cycle(self, force: bool) -> CycleResult:
        settings = self._store.get_settings()
        days = settings.retention_days
        if days is None:
            self._enter(CycleState.SKIPPED)
            return CycleResult(CycleState.SKIPPED, reason="retention is off")

        now = self._clock()
        last = settings.last_cleanup_at
        if not force and last is not None and now - last < self._min_interval_ms:
            self._enter(CycleState.SKIPPED)
            minutes = (now - last) // MINUTE_MS
            return CycleResult(CycleState.SKIPPED, reason=f"last cleanup {minutes} min ago")

        self._enter(CycleState.AGE_EVICTING)
        cutoff = now - days * DAY_MS

        def older_than_cutoff(history: Mapping[str, VideoRecord], protected: set[str]) -> Iterable[str]:
            return [rid for rid, rec in history.items() if rec.watched_at < cutoff]

        evicted = self._evict_history_only(older_than_cutoff)
        self._store.record_cleanup(now)
        repaired = self._store.repair()

        if evicted:
            logger.info("Retention cleanup (%dd): evicted %d history records", days, len(evicted))
        else:
            logger.info("Retention cleanup (%dd): nothing to evict", days)
        return CycleResult(CycleState.AGE_EVICTING, evicted=evicted, repaired=repaired)

    # -------------------------------------------------------------------------
    # Quota path
    # -------------------------------------------------------------------------

    def usage(self) -> float:
        """Fraction of the backend quota in use (0.0 when unlimited)."""
        backend = self._store.backend
        if backend.quota_bytes <= 0:
            return 0.0
        return backend.bytes_in_use() / backend.quota_bytes

    def run_quota_check(self, *, force: bool = False) -> CycleResult:
        """
        Evict the oldest unprotected history records if storage is near quota.

        Runs regardless of the retention policy.  ``force`` evicts even
        below the high-water mark.
        """
        with self._state_lock:
            self._enter(CycleState.EVALUATING)
            try:
                ratio = self.usage()
                if not force and ratio < self._quota_high_water:
                    self._enter(CycleState.SKIPPED)
                    return CycleResult(CycleState.SKIPPED, reason=f"usage {ratio:.0%}")

                self._enter(CycleState.QUOTA_EVICTING)
                evicted = self._evict_history_only(self._oldest_unprotected)
                logger.info(
                    "Quota pressure (%.0f%% used): evicted %d history records",
                    ratio * 100, len(evicted),
                )
                return CycleResult(CycleState.QUOTA_EVICTING, evicted=evicted)
            finally:
                self._enter(CycleState.IDLE)

    def _oldest_unprotected(self, history: Mapping[str, VideoRecord], protected: set[str]) -> list[str]:
        unprotected = sorted(
            (rec for rid, rec in history.items() if rid not in protected),
            key=lambda r: (r.watched_at, r.id),
        )
        count = quota_eviction_count(
            len(unprotected), self._quota_min_evict, self._quota_evict_fraction,
        )
        return [rec.id for rec in unprotected[:count]]

    # -------------------------------------------------------------------------
    # Shared eviction step
    # -------------------------------------------------------------------------

    def _evict_history_only(
        self,
        select: Callable[[Mapping[str, VideoRecord], set[str]], Iterable[str]],
    ) -> list[str]:
        protected = self._store.protected_ids()
        library_before = self._store.library_size()
        evicted = self._store.evict_from_history(lambda h: select(h, protected), protected)

        library_after = self._store.library_size()
        if library_after != library_before:
            raise InvariantViolation(
                f"Library size changed during history eviction: {library_before} -> {library_after}"
            )
        return evicted


class MaintenanceScheduler:
    """
    Background timers for a LifecycleManager.

    Two daemon threads: one runs the age cycle every ``cleanup_seconds``,
    the other polls quota usage every ``quota_seconds``.  Errors are
    logged and the timer keeps going.
    """

    def __init__(self, manager: LifecycleManager, *, cleanup_seconds: float = 3600, quota_seconds: float = 60):
        self._manager = manager
        self._cleanup_seconds = cleanup_seconds
        self._quota_seconds = quota_seconds
        self._stop = threading.Event()
        self._threads: list[threading.Thread] = []

    @property
    def running(self) -> bool:
        return any(t.is_alive() for t in self._threads)

    def start(self) -> None:
        if self.running:
            return
        self._stop.clear()
        self._threads = [
            threading.Thread(
                target=self._loop, args=(self._cleanup_seconds, self._manager.run_cycle, "retention"),
                name="vibrary-retention", daemon=True,
            ),
            threading.Thread(
                target=self._loop, args=(self._quota_seconds, self._manager.run_quota_check, "quota"),
                name="vibrary-quota", daemon=True,
            ),
        ]
        for t in self._threads:
            t.start()
        logger.debug("Maintenance timers started")

    def stop(self, timeout: float = 5.0) -> None:
        self._stop.set()
        for t in self._threads:
            t.join(timeout)
        self._threads = []

    def _loop(self, interval: float, job: Callable[[], CycleResult], name: str) -> None:
        while not self._stop.wait(interval):
            self._run_safe(job, name)

    @staticmethod
    def _run_safe(job: Callable[[], CycleResult], name: str) -> Optional[CycleResult]:
        try:
            return job()
        except VibraryError as e:
            logger.warning("%s cycle aborted: %s", name.capitalize(), e)
        except Exception as e:
            logger.warning("%s cycle failed: %s", name.capitalize(), e)
        return None

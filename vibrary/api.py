"""
Public API for the video record store.

``Vibrary`` wires configuration, the backend, the record store and the
lifecycle manager together:

- submit_detection(): resolve -> burst filter -> background upsert
- list_history() / list_library(): what the UI shows
- playlist, rating and title edits
- export_data() / import_data()
- run_cleanup() / run_quota_check(): maintenance on demand
"""

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from pathlib import Path
from typing import Any, Optional, Union

from .backend import create_backend
from .config import StoreConfig, get_config_dir, load_or_create_config, save_config
from .errors import BackendUnavailable, VibraryError, log_exception
from .identity import IdentityResolver
from .lifecycle import CycleResult, LifecycleManager, MaintenanceScheduler
from .logging_config import configure_ops_log, remove_ops_log
from .migration import MigrationPlan, migrate_legacy
from .protocol import KeyValueBackendProtocol
from .store import (
    HISTORY_KEY,
    LIBRARY_KEY,
    SETTINGS_KEY,
    SORT_DATE,
    ConflictResolver,
    HistoryFilter,
    KEEP_EXISTING,
    RecordStore,
)
from .types import Admission, Clock, Detection, Settings, VideoRecord, now_ms

logger = logging.getLogger(__name__)

BURST_CAPACITY = 15
BURST_KEEP = 8
BURST_WINDOW_MS = 30_000


class RecentKeys:
    """
    Short memory of recently submitted dedupe keys.

    A key seen within ``window_ms`` is a repeat.  When more than
    ``capacity`` keys are remembered, only the newest ``keep`` are kept.
    """

    def __init__(
        self,
        capacity: int = BURST_CAPACITY,
        keep: int = BURST_KEEP,
        window_ms: int = BURST_WINDOW_MS,
        clock: Optional[Clock] = None,
    ):
        self._capacity = capacity
        self._keep = keep
        self._window_ms = window_ms
        self._clock = clock or now_ms
        self._entries: list[tuple[str, int]] = []
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._entries)

    def seen(self, key: str) -> bool:
        """Record ``key``; True if it was already seen within the window."""
        now = self._clock()
        with self._lock:
            self._entries = [(k, t) for k, t in self._entries if now - t < self._window_ms]
            if any(k == key for k, _ in self._entries):
                return True
            self._entries.append((key, now))
            if len(self._entries) > self._capacity:
                self._entries = self._entries[-self._keep:]
            return False


class Vibrary:
    """
    Video history and playlist library backed by a shared key-value store.

    Example:
        with Vibrary() as vb:
            vb.submit_detection({"title": "Intro to SQLite", "url": "https://youtu.be/abcdefghijk"})
            vb.flush()
            for rec in vb.list_history(limit=10):
                print(rec.title)
    """

    def __init__(
        self,
        store_path: Optional[Union[str, Path]] = None,
        *,
        config: Optional[StoreConfig] = None,
        backend: Optional[KeyValueBackendProtocol] = None,
        clock: Optional[Clock] = None,
        start_timers: bool = False,
    ) -> None:
        """
        Open (or create) a store.

        Args:
            store_path: Store directory. Defaults to VIBRARY_STORE_PATH or ~/.vibrary.
            config: Pre-loaded StoreConfig (skips filesystem config discovery).
            backend: Injected key-value backend (skips backend creation).
            clock: Millisecond clock; defaults to wall time.
            start_timers: Start the background maintenance timers.
        """
        # --- Config resolution ---
        if config is not None:
            self._config = config
        else:
            config_dir = Path(store_path).expanduser().resolve() if store_path else get_config_dir()
            self._config = load_or_create_config(config_dir)
        self._store_path = self._config.path
        self._clock: Clock = clock or now_ms

        # --- Persistent operations log ---
        self._ops_log_handler = configure_ops_log(self._store_path)

        # --- Backend and record store ---
        self._owns_backend = backend is None
        self._backend = backend if backend is not None else create_backend(self._config)
        self._resolver = IdentityResolver(extra_tracking_params=self._config.extra_tracking_params)
        self._store = RecordStore(
            self._backend,
            resolver=self._resolver,
            clock=self._clock,
            removal_policy=self._config.library_removal_policy,
        )

        created = self._store.initialize()
        if SETTINGS_KEY in created and self._config.retention_policy != "off":
            self._store.set_retention_policy(self._config.retention_policy)
        self._migration = migrate_legacy(self._store)
        self._startup_maintenance()

        # --- Lifecycle ---
        self._lifecycle = LifecycleManager(
            self._store,
            clock=self._clock,
            min_interval_minutes=self._config.min_cleanup_interval_minutes,
            quota_high_water=self._config.quota_high_water,
            quota_min_evict=self._config.quota_min_evict,
            quota_evict_fraction=self._config.quota_evict_fraction,
        )
        self._scheduler = MaintenanceScheduler(
            self._lifecycle,
            cleanup_seconds=self._config.cleanup_check_seconds,
            quota_seconds=self._config.quota_poll_seconds,
        )
        if start_timers:
            self._scheduler.start()

        # Detections are written by one background worker, in order
        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="vibrary-detect")
        self._recent = RecentKeys(clock=self._clock)
        self._closed = False

    def _startup_maintenance(self) -> None:
        """Sweep duplicates and repair invariants left by other processes."""
        try:
            self._store.dedupe_sweep(HISTORY_KEY)
            self._store.dedupe_sweep(LIBRARY_KEY)
            self._store.repair()
        except BackendUnavailable as e:
            logger.warning("Startup maintenance skipped: %s", e)

    @property
    def config(self) -> StoreConfig:
        return self._config

    @property
    def store(self) -> RecordStore:
        return self._store

    @property
    def lifecycle(self) -> LifecycleManager:
        return self._lifecycle

    @property
    def migration(self) -> Optional[MigrationPlan]:
        """The legacy migration applied when this store was opened, if any."""
        return self._migration

    # -------------------------------------------------------------------------
    # Detection intake
    # -------------------------------------------------------------------------

    def submit_detection(self, detection: Union[Detection, dict[str, Any]]) -> None:
        """
        Hand a detection to the background writer and return immediately.

        Detections that fail identity resolution, and repeats of a video
        submitted in the last few seconds, are dropped without a trace.
        Backend failures are logged, never raised.
        Detections submitted after close() are logged and dropped.
        """
        if isinstance(detection, dict):
            detection = Detection.from_dict(detection)
        identity = self._resolver.resolve(detection)
        if identity is None:
            return
        if self._recent.seen(identity.dedupe_key):
            logger.debug("Dropping repeat detection of %s", identity.record_id)
            return
        if self._closed:
            logger.warning("Detection of %s dropped: store is closed", identity.record_id)
            return
        try:
            self._executor.submit(self._record_safe, detection)
        except RuntimeError:
            # close() shut the worker down concurrently
            logger.warning("Detection of %s dropped: store is closed", identity.record_id)

    def _record_safe(self, detection: Detection) -> Optional[Admission]:
        try:
            return self._store.upsert(detection)
        except BackendUnavailable as e:
            logger.warning("Detection not recorded: %s", e)
        except Exception as e:
            logger.warning("Detection not recorded: %s", e)
            log_exception(e, "submit_detection")
        return None

    def record(self, detection: Union[Detection, dict[str, Any]]) -> Admission:
        """Admit and write a detection synchronously (no burst filter)."""
        if isinstance(detection, dict):
            detection = Detection.from_dict(detection)
        return self._store.upsert(detection)

    def flush(self, timeout: Optional[float] = None) -> None:
        """Wait until every submitted detection has been written."""
        self._executor.submit(lambda: None).result(timeout)

    # -------------------------------------------------------------------------
    # Queries
    # -------------------------------------------------------------------------

    def list_history(
        self,
        filter: Optional[HistoryFilter] = None,
        sort: str = SORT_DATE,
        limit: Optional[int] = None,
    ) -> list[VideoRecord]:
        return self._store.list_history(filter, sort, limit)

    def list_library(self, playlist: Optional[str] = None) -> list[VideoRecord]:
        return self._store.list_library(playlist)

    def list_playlists(self) -> dict[str, list[str]]:
        return self._store.list_playlists()

    def get(self, record_id: str) -> Optional[VideoRecord]:
        return self._store.get(record_id)

    def stats(self) -> dict[str, Any]:
        """Record counts, storage usage and maintenance settings."""
        stats = self._store.stats()
        settings = self._store.get_settings()
        stats["retention_policy"] = settings.retention_policy
        stats["last_cleanup_at"] = settings.last_cleanup_at
        stats["store_path"] = str(self._store_path)
        stats["backend"] = self._config.backend
        return stats

    # -------------------------------------------------------------------------
    # Edits
    # -------------------------------------------------------------------------

    def set_rating(self, record_id: str, rating: int) -> VideoRecord:
        return self._store.set_rating(record_id, rating)

    def edit_title(self, record_id: str, title: str) -> VideoRecord:
        return self._store.edit_title(record_id, title)

    def delete_from_history(self, record_id: str) -> bool:
        return self._store.delete_from_history(record_id)

    def create_playlist(self, name: str) -> str:
        return self._store.create_playlist(name)

    def rename_playlist(self, old: str, new: str) -> str:
        return self._store.rename_playlist(old, new)

    def delete_playlist(self, name: str) -> list[str]:
        return self._store.delete_playlist(name)

    def add_to_playlist(self, record_id: str, name: str, *, create: bool = False) -> bool:
        return self._store.add_to_playlist(record_id, name, create=create)

    def remove_from_playlist(self, record_id: str, name: str) -> bool:
        return self._store.remove_from_playlist(record_id, name)

    # -------------------------------------------------------------------------
    # Settings and maintenance
    # -------------------------------------------------------------------------

    def get_settings(self) -> Settings:
        return self._store.get_settings()

    def set_retention_policy(self, policy: Union[str, int]) -> Settings:
        """
        Change the retention policy and run a maintenance cycle right away.

        The policy is stored in the shared settings (seen by every process)
        and in vibrary.toml when the store has one.
        """
        settings = self._store.set_retention_policy(policy)
        if self._config.exists():
            self._config.retention_policy = settings.retention_policy
            save_config(self._config)
        self._run_safe(self._lifecycle.run_cycle)
        return settings

    def run_cleanup(self, *, force: bool = False) -> CycleResult:
        """Run the age-based cycle now (still subject to the 1-hour guard unless forced)."""
        return self._lifecycle.run_cycle(force=force)

    def run_quota_check(self, *, force: bool = False) -> CycleResult:
        return self._lifecycle.run_quota_check(force=force)

    def sweep(self) -> dict[str, Any]:
        """Collapse duplicates in both partitions and repair invariants."""
        return {
            HISTORY_KEY: self._store.dedupe_sweep(HISTORY_KEY),
            LIBRARY_KEY: self._store.dedupe_sweep(LIBRARY_KEY),
            "repaired": self._store.repair(),
        }

    def migrate(self) -> Optional[MigrationPlan]:
        """Run the legacy migration again (a no-op once migrated)."""
        return migrate_legacy(self._store)

    @staticmethod
    def _run_safe(job) -> Optional[CycleResult]:
        try:
            return job()
        except VibraryError as e:
            logger.warning("Maintenance cycle aborted: %s", e)
        return None

    # -------------------------------------------------------------------------
    # Data Export / Import
    # -------------------------------------------------------------------------

    def export_data(self) -> dict[str, Any]:
        """Snapshot of the full persisted schema (JSON-ready)."""
        return self._store.export_data()

    def import_data(
        self,
        data: dict[str, Any],
        *,
        conflict: Union[str, ConflictResolver] = KEEP_EXISTING,
    ) -> dict[str, Any]:
        """Merge an export snapshot; see RecordStore.import_data."""
        return self._store.import_data(data, conflict=conflict)

    # -------------------------------------------------------------------------
    # Lifecycle
    # -------------------------------------------------------------------------

    def close(self) -> None:
        """Stop timers, drain the detection queue and close the backend."""
        self._closed = True
        if hasattr(self, "_scheduler"):
            self._scheduler.stop()
        if hasattr(self, "_executor"):
            self._executor.shutdown(wait=True)
        if getattr(self, "_owns_backend", False) and self._backend is not None:
            self._backend.close()
            self._backend = None
        if getattr(self, "_ops_log_handler", None):
            remove_ops_log(self._ops_log_handler)
            self._ops_log_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False

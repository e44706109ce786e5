# Overview: Connectivity state machine that decides when the sync queue is drained.

"""
States: online, offline, syncing.

    offline --network_available--> online --(drain)--> syncing --> online
    online/syncing --network_lost--> offline
    online --tick / sync_now--> syncing --> online

- A drain never runs while offline.
- A drain always ends back in online (or offline, if the network was lost
  meanwhile), whatever happened to individual queue entries.
- The periodic timer is injectable (timer_factory) so tests can fire ticks
  by hand instead of waiting on real time.
"""

from __future__ import annotations

import logging
import threading
from enum import Enum
from typing import Callable

from flask import current_app, has_app_context

from stockroom.time_utils import to_utc_z, utcnow

logger = logging.getLogger(__name__)

EXTENSION_KEY = "connectivity"


class ConnectivityState(str, Enum):
    ONLINE = "online"
    OFFLINE = "offline"
    SYNCING = "syncing"


class ConnectivityMonitor:
    def __init__(
        self,
        drain: Callable[[], object],
        *,
        interval_seconds: float = 300,
        start_offline: bool = True,
        timer_factory: Callable | None = None,
        pending_count: Callable[[], int] | None = None,
        probe: Callable[[], bool] | None = None,
        app=None,
    ) -> None:
        self._drain = drain
        self._interval = interval_seconds
        self._timer_factory = timer_factory or threading.Timer
        self._pending_count = pending_count
        self._probe = probe
        self._app = app

        self._lock = threading.RLock()
        self._drain_guard = threading.Lock()
        self._state = ConnectivityState.OFFLINE if start_offline else ConnectivityState.ONLINE
        self._network_up = not start_offline
        self._timer = None
        self._running = False
        self._listeners: list[Callable[[ConnectivityState, ConnectivityState], None]] = []

        self.last_result = None
        self.last_drain_at = None
        self.last_error: str | None = None

    # ------------------------------------------------------------------
    # State
    # ------------------------------------------------------------------

    @property
    def state(self) -> ConnectivityState:
        return self._state

    @property
    def is_online(self) -> bool:
        return self._network_up

    def add_listener(self, callback: Callable[[ConnectivityState, ConnectivityState], None]) -> None:
        self._listeners.append(callback)

    def remove_listener(self, callback) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def _set_state(self, new_state: ConnectivityState) -> None:
        with self._lock:
            old = self._state
            if old == new_state:
                return
            self._state = new_state
        logger.info("Connectivity %s -> %s", old.value, new_state.value)
        for callback in list(self._listeners):
            try:
                callback(old, new_state)
            except Exception:
                logger.exception("Connectivity listener failed")

    # ------------------------------------------------------------------
    # Signals
    # ------------------------------------------------------------------

    def network_available(self):
        """offline -> online, then drain right away."""
        with self._lock:
            was_up = self._network_up
            self._network_up = True
        if not was_up:
            self._set_state(ConnectivityState.ONLINE)
            return self._run_drain()
        return None

    def network_lost(self) -> None:
        with self._lock:
            self._network_up = False
        self._set_state(ConnectivityState.OFFLINE)

    def sync_now(self):
        """Manual trigger. Refused (returns None) while offline."""
        if not self._network_up:
            logger.info("Sync requested while offline; ignored")
            return None
        return self._run_drain()

    def tick(self):
        """Periodic trigger; drains only while online."""
        if not self._network_up:
            return None
        return self._run_drain()

    def probe(self) -> bool:
        """Ask the remote store whether it is reachable and emit the matching signal."""
        if self._probe is None:
            return self._network_up
        try:
            reachable = bool(self._probe())
        except Exception:
            logger.exception("Connectivity probe failed")
            reachable = False
        if reachable and not self._network_up:
            self.network_available()
        elif not reachable and self._network_up:
            self.network_lost()
        return reachable

    # ------------------------------------------------------------------
    # Drain
    # ------------------------------------------------------------------

    def _call_drain(self):
        if self._app is not None and not has_app_context():
            with self._app.app_context():
                return self._drain()
        return self._drain()

    def _run_drain(self):
        if not self._drain_guard.acquire(blocking=False):
            logger.info("Drain already running; trigger ignored")
            return None
        try:
            self._set_state(ConnectivityState.SYNCING)
            result = None
            try:
                result = self._call_drain()
                self.last_error = None
            except Exception as exc:
                logger.exception("Drain failed")
                self.last_error = str(exc) or exc.__class__.__name__
            self.last_result = result
            self.last_drain_at = utcnow()
            return result
        finally:
            self._set_state(ConnectivityState.ONLINE if self._network_up else ConnectivityState.OFFLINE)
            self._drain_guard.release()

    # ------------------------------------------------------------------
    # Periodic timer
    # ------------------------------------------------------------------

    def start(self) -> None:
        if not self._interval or self._interval <= 0:
            return
        with self._lock:
            if self._running:
                return
            self._running = True
        self._schedule()

    def stop(self) -> None:
        with self._lock:
            self._running = False
            timer, self._timer = self._timer, None
        if timer is not None:
            timer.cancel()

    @property
    def running(self) -> bool:
        return self._running

    def _schedule(self) -> None:
        with self._lock:
            if not self._running:
                return
            timer = self._timer_factory(self._interval, self._on_timer)
            if hasattr(timer, "daemon"):
                timer.daemon = True
            self._timer = timer
        timer.start()

    def _on_timer(self) -> None:
        try:
            self.tick()
        finally:
            self._schedule()

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def snapshot(self) -> dict:
        pending = None
        if self._pending_count is not None:
            if self._app is not None and not has_app_context():
                with self._app.app_context():
                    pending = self._pending_count()
            else:
                pending = self._pending_count()
        last = self.last_result
        return {
            "state": self._state.value,
            "online": self._network_up,
            "pending": pending,
            "timer_running": self._running,
            "interval_seconds": self._interval,
            "last_drain_at": to_utc_z(self.last_drain_at),
            "last_result": last.to_dict() if hasattr(last, "to_dict") else last,
            "last_error": self.last_error,
        }


def init_monitor(app, **overrides) -> ConnectivityMonitor:
    """Build the app's monitor from config and register it under app.extensions."""
    from .extensions import remote
    from .services import sync_service

    def _probe() -> bool:
        if has_app_context():
            return remote.is_configured() and remote.get_store().ping()
        with app.app_context():
            return remote.is_configured() and remote.get_store().ping()

    options = {
        "interval_seconds": app.config.get("SYNC_INTERVAL_SECONDS", 300),
        "start_offline": app.config.get("START_OFFLINE", True),
        "pending_count": sync_service.pending_count,
        "probe": _probe,
        "app": app,
    }
    options.update(overrides)
    monitor = ConnectivityMonitor(sync_service.drain, **options)
    app.extensions[EXTENSION_KEY] = monitor
    return monitor


def get_monitor() -> ConnectivityMonitor:
    return current_app.extensions[EXTENSION_KEY]

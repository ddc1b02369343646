from __future__ import annotations

import logging
import threading
from typing import Optional

from tandem.config_manager import ConfigManager
from tandem.sync_engine import SyncEngine

logger = logging.getLogger(__name__)


class SyncScheduler:
    def __init__(self, sync_engine: SyncEngine, config_manager: ConfigManager) -> None:
        self.sync_engine = sync_engine
        self.config_manager = config_manager
        self._thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._manual_trigger_event = threading.Event()

    @property
    def running(self) -> bool:
        return bool(self._thread and self._thread.is_alive())

    def start(self) -> None:
        if self.running:
            return
        self._stop_event.clear()
        self._thread = threading.Thread(target=self._loop, name="tandem-sync-scheduler", daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop_event.set()
        self._manual_trigger_event.set()
        if self._thread:
            self._thread.join(timeout=5)

    def trigger_manual(self) -> None:
        self._manual_trigger_event.set()

    def _run(self, trigger: str) -> None:
        try:
            results = self.sync_engine.sync_all(trigger=trigger, cancel_event=self._stop_event)
        except Exception:
            logger.exception("Sync pass (%s) failed", trigger)
            return
        logger.info("Sync pass (%s) finished for %d users", trigger, len(results))

    def _loop(self) -> None:
        self._run("startup")

        while not self._stop_event.is_set():
            config = self.config_manager.load()
            interval_seconds = max(60, int(config.sync.interval_seconds))
            manual = self._manual_trigger_event.wait(timeout=interval_seconds)
            self._manual_trigger_event.clear()
            if self._stop_event.is_set():
                break
            self._run("manual" if manual else "scheduled")

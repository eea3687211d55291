"""
licensevault daemon -- the always-on sync scheduler.

Restores the store from the remote on startup, then runs a sync pass
(push, then pull) every ``sync_interval`` seconds until stopped.
Request handlers in the same process trigger their own background
pushes; the engine's in-flight guard keeps the two from overlapping.
"""

from __future__ import annotations

import logging
import os
import signal
import threading
from collections import deque
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional

from . import LICENSE_HOME
from .config import LicenseVaultConfig, load_config
from .runtime import build_engine, build_store
from .service import LicenseService
from .sync.engine import SyncEngine

logger = logging.getLogger("licensevault.daemon")

PID_FILE = "daemon.pid"
LOG_DIR = "logs"
LOG_FORMAT = "%(asctime)s [%(name)s] %(levelname)s: %(message)s"
MAX_ERRORS = 50


class DaemonConfig:
    """Where the daemon keeps its files and how often it syncs.

    Attributes:
        home: licensevault home directory.
        sync_interval: Seconds between sync passes. None means the
            configured value.
        log_file: Daemon log, under ``<home>/logs``.
    """

    def __init__(
        self,
        home: Optional[Path] = None,
        sync_interval: Optional[int] = None,
    ):
        self.home = Path(home or LICENSE_HOME).expanduser()
        self.sync_interval = sync_interval
        self.log_file = self.home / LOG_DIR / "daemon.log"
        self.log_file.parent.mkdir(parents=True, exist_ok=True)


class PidFile:
    """The ``daemon.pid`` marker in a home directory."""

    def __init__(self, home: Path):
        self.path = Path(home).expanduser() / PID_FILE

    def write(self) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        self.path.write_text(str(os.getpid()), encoding="utf-8")

    def remove(self) -> None:
        self.path.unlink(missing_ok=True)

    def live_pid(self) -> Optional[int]:
        """PID of a live daemon, clearing the file when it is stale."""
        try:
            pid = int(self.path.read_text(encoding="utf-8").strip())
            os.kill(pid, 0)
        except FileNotFoundError:
            return None
        except (ValueError, ProcessLookupError, PermissionError):
            self.remove()
            return None
        return pid


class DaemonState:
    """Pass counters and recent errors for the running daemon.

    Sync counters live in the engine's ``SyncState``.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self.running = False
        self.started_at: Optional[datetime] = None
        self.last_pass: Optional[datetime] = None
        self.passes_completed = 0
        self.errors: deque[str] = deque(maxlen=MAX_ERRORS)

    def mark_running(self, running: bool) -> None:
        with self._lock:
            self.running = running
            if running:
                self.started_at = datetime.now(timezone.utc)

    def record_pass(self) -> None:
        with self._lock:
            self.last_pass = datetime.now(timezone.utc)
            self.passes_completed += 1

    def record_error(self, error: str) -> None:
        stamp = datetime.now(timezone.utc).isoformat(timespec="seconds")
        with self._lock:
            self.errors.append(f"[{stamp}] {error}")

    def snapshot(self, engine: Optional[SyncEngine] = None) -> dict:
        """Serializable view of the daemon, plus the engine's status."""
        with self._lock:
            data = {
                "pid": os.getpid(),
                "running": self.running,
                "started_at": self.started_at.isoformat() if self.started_at else None,
                "last_pass": self.last_pass.isoformat() if self.last_pass else None,
                "passes_completed": self.passes_completed,
                "recent_errors": list(self.errors)[-10:],
            }
        data["sync"] = engine.status() if engine is not None else None
        return data


class DaemonService:
    """The licensevault daemon process.

    Args:
        config: Daemon configuration.
        settings: Loaded configuration. Read from ``config.home`` when
            omitted.
    """

    def __init__(
        self,
        config: DaemonConfig,
        settings: Optional[LicenseVaultConfig] = None,
    ):
        self.config = config
        self.settings = settings or load_config(config.home)
        if config.sync_interval is None:
            config.sync_interval = self.settings.sync_interval
        self.state = DaemonState()
        self.store = build_store(self.settings)
        self.engine = build_engine(self.settings, self.store)
        self.service = LicenseService(
            self.store, self.engine, push_on_write=self.settings.push_on_write
        )
        self.pid_file = PidFile(config.home)
        self._stop_event = threading.Event()
        self._worker: Optional[threading.Thread] = None
        self._log_handler: Optional[logging.Handler] = None

    def start(self, install_signals: bool = True) -> None:
        """Restore the store and start the sync worker.

        Args:
            install_signals: Register SIGTERM/SIGINT handlers. Only
                possible from the main thread.
        """
        self.pid_file.write()
        self._attach_log_file()
        if install_signals:
            for sig in (signal.SIGTERM, signal.SIGINT):
                signal.signal(sig, self._on_signal)

        self.state.mark_running(True)
        logger.info(
            "Daemon starting: home=%s sync=%ds pid=%d",
            self.config.home, self.config.sync_interval, os.getpid(),
        )

        if self.engine is None:
            logger.warning("Sync is not configured, daemon will only keep the process alive")
        elif self.settings.sync_on_startup:
            outcome = self.engine.startup()
            if not outcome.success and not outcome.skipped:
                self.state.record_error(f"Startup: {outcome.detail}")

        self._worker = threading.Thread(target=self._sync_loop, name="daemon-sync", daemon=True)
        self._worker.start()

    def stop(self) -> None:
        """Stop the worker and let background syncs finish."""
        logger.info("Daemon stopping")
        self._stop_event.set()
        self.state.mark_running(False)

        if self._worker is not None:
            self._worker.join(timeout=5)
        if self.engine is not None and not self.engine.wait(timeout=30):
            logger.warning("Background sync still running at shutdown")

        self.pid_file.remove()
        logger.info("Daemon stopped")
        self._detach_log_file()

    def run_forever(self) -> None:
        """Block until stop is signaled."""
        try:
            while not self._stop_event.wait(timeout=1):
                pass
        except KeyboardInterrupt:
            pass
        finally:
            self.stop()

    def run_pass(self) -> None:
        """One scheduled sync pass, recording failures in the daemon state."""
        if self.engine is None:
            return
        try:
            outcomes = self.engine.sync_pass()
        except Exception as exc:
            logger.error("Sync pass error: %s", exc)
            self.state.record_error(f"Sync: {exc}")
            return
        for outcome in outcomes:
            if not outcome.success and not outcome.skipped:
                self.state.record_error(f"{outcome.direction.value}: {outcome.detail}")
        self.state.record_pass()

    def _sync_loop(self) -> None:
        while not self._stop_event.wait(timeout=self.config.sync_interval):
            self.run_pass()

    def _on_signal(self, signum, frame):
        logger.info("Received %s, stopping", signal.Signals(signum).name)
        self._stop_event.set()

    def _attach_log_file(self) -> None:
        """Send the package's log records to the daemon log."""
        handler = logging.FileHandler(self.config.log_file)
        handler.setFormatter(logging.Formatter(LOG_FORMAT))
        package_logger = logging.getLogger("licensevault")
        package_logger.addHandler(handler)
        if package_logger.getEffectiveLevel() > logging.INFO:
            package_logger.setLevel(logging.INFO)
        self._log_handler = handler

    def _detach_log_file(self) -> None:
        if self._log_handler is None:
            return
        logging.getLogger("licensevault").removeHandler(self._log_handler)
        self._log_handler.close()
        self._log_handler = None


def read_pid(home: Optional[Path] = None) -> Optional[int]:
    """PID of the running daemon for ``home``, or None."""
    return PidFile(Path(home or LICENSE_HOME)).live_pid()


def is_running(home: Optional[Path] = None) -> bool:
    return read_pid(home) is not None

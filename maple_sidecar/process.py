"""
Process supervisor for the maple-proxy child.

Owns exactly one child process: checks the port, spawns the binary with the
MAPLE_* environment, waits for /health, forwards stdout/stderr to logging,
restarts the child with a growing backoff after unexpected crashes, and
shuts it down with SIGTERM followed by SIGKILL.
"""

import atexit
import logging
import signal
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path

import httpx
import psutil

from .config import ProxyConfig, settings
from .errors import PortInUseError, SidecarError, StartupError
from .net import check_port_available, is_healthy

logger = logging.getLogger(__name__)
child_logger = logging.getLogger("maple_sidecar.child")

# Signals that mean someone asked the child to stop; exits by these are not crashes
DELIBERATE_SIGNALS = frozenset({signal.SIGINT, signal.SIGTERM})


class ProxyState(Enum):
    IDLE = "idle"
    STARTING = "starting"
    HEALTHY = "healthy"
    RESTARTING = "restarting"
    FAILED = "failed"


@dataclass
class RunningInstance:
    """The child process currently owned by a supervisor."""

    process: subprocess.Popen
    port: int
    version: str
    started_at: datetime = field(default_factory=datetime.now)

    @property
    def pid(self) -> int:
        return self.process.pid


def describe_exit(returncode: int) -> str:
    if returncode < 0:
        try:
            return f"signal {signal.Signals(-returncode).name}"
        except ValueError:
            return f"signal {-returncode}"
    return f"code {returncode}"


def is_deliberate_exit(returncode: int) -> bool:
    return returncode < 0 and -returncode in DELIBERATE_SIGNALS


class Supervisor:
    """Runs one maple-proxy process and keeps it alive."""

    def __init__(self, config: ProxyConfig, binary_path: Path | str, version: str):
        self.config = config
        self.binary_path = Path(binary_path)
        self.version = version
        self._lock = threading.RLock()
        self._state = ProxyState.IDLE
        self._instance: RunningInstance | None = None
        self._stop_event = threading.Event()
        self._restart_attempts = 0

    @property
    def state(self) -> ProxyState:
        with self._lock:
            return self._state

    @property
    def instance(self) -> RunningInstance | None:
        with self._lock:
            return self._instance

    @property
    def port(self) -> int:
        return self.config.port

    @property
    def restart_attempts(self) -> int:
        with self._lock:
            return self._restart_attempts

    def is_running(self) -> bool:
        instance = self.instance
        return instance is not None and instance.process.poll() is None

    def get_pid(self) -> int | None:
        instance = self.instance
        if instance and instance.process.poll() is None:
            return instance.pid
        return None

    def get_metrics(self) -> dict | None:
        """Current CPU and memory usage of the child, or None if not running."""
        pid = self.get_pid()
        if not pid:
            return None
        try:
            proc = psutil.Process(pid)
            return {
                "pid": pid,
                "cpu_percent": proc.cpu_percent(interval=0.1),
                "memory_mb": round(proc.memory_info().rss / 1024 / 1024, 2),
            }
        except (psutil.NoSuchProcess, psutil.AccessDenied) as e:
            logger.warning(f"Could not read metrics for maple-proxy (pid {pid}): {e}")
            return None

    def start(self) -> RunningInstance:
        """
        Spawn the child and block until it answers /health.

        Raises PortInUseError without spawning if the port is taken, and
        StartupError if the child cannot be spawned, exits before becoming
        healthy, or does not become healthy within the startup timeout. A
        child owned from an earlier start is stopped first and any pending
        crash restart is cancelled.
        """
        with self._lock:
            if self._state is ProxyState.STARTING:
                raise SidecarError("maple-proxy start already in progress")
            previous = self._instance
            pending = self._state is ProxyState.RESTARTING

        if previous is not None or pending:
            logger.info("Stopping existing maple-proxy before restart...")
        # Also cancels a pending crash restart from the previous run.
        self.stop()

        with self._lock:
            if self._state is ProxyState.STARTING:
                raise SidecarError("maple-proxy start already in progress")
            if not check_port_available(self.port, self.config.host):
                raise PortInUseError(self.port)

            stop_event = threading.Event()
            self._stop_event = stop_event
            self._restart_attempts = 0
            self._state = ProxyState.STARTING
            try:
                proc = self._spawn()
            except StartupError:
                self._state = ProxyState.FAILED
                raise
            instance = RunningInstance(process=proc, port=self.port, version=self.version)
            self._instance = instance
            atexit.register(self._shutdown_at_exit)

        try:
            self._wait_until_healthy(proc, stop_event)
        except StartupError:
            self._discard(proc)
            with self._lock:
                if self._instance is instance:
                    self._instance = None
                if not stop_event.is_set():
                    self._state = ProxyState.FAILED
            raise

        with self._lock:
            if stop_event.is_set():
                raise StartupError("maple-proxy was stopped during startup")
            self._state = ProxyState.HEALTHY
            self._arm_watcher(proc, stop_event)

        logger.info(f"maple-proxy {self.version} running on http://{self.config.host}:{self.port}")
        return instance

    def kill(self) -> None:
        """
        Stop the child deliberately: SIGTERM now, SIGKILL after the grace period.

        Suppresses crash recovery for the resulting exit. Safe to call when
        nothing is running and safe to call twice.
        """
        with self._lock:
            self._stop_event.set()
            instance = self._instance
            self._instance = None
            self._state = ProxyState.IDLE
            atexit.unregister(self._shutdown_at_exit)

        if instance is None or instance.process.poll() is not None:
            return

        proc = instance.process
        logger.info(f"Stopping maple-proxy (pid {proc.pid})")
        try:
            if sys.platform == "win32":
                proc.terminate()
            else:
                proc.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            return

        timer = threading.Timer(settings.shutdown_grace, self._force_kill, args=(proc,))
        timer.daemon = True
        timer.start()

    def stop(self, timeout: float = None) -> None:
        """kill() and wait for the child to exit, bounded by `timeout`."""
        instance = self.instance
        self.kill()
        if instance is None:
            return
        if timeout is None:
            timeout = settings.shutdown_grace + 2
        try:
            instance.process.wait(timeout=timeout)
            logger.info("Stopped maple-proxy")
        except subprocess.TimeoutExpired:
            logger.warning(f"maple-proxy (pid {instance.pid}) still running after {timeout}s")

    def _shutdown_at_exit(self):
        self.stop()

    def _spawn(self) -> subprocess.Popen:
        try:
            proc = subprocess.Popen(
                [str(self.binary_path)],
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=self.config.child_env(),
            )
        except OSError as e:
            raise StartupError(f"maple-proxy failed to spawn ({self.binary_path}): {e}") from e

        for stream, level in ((proc.stdout, "info"), (proc.stderr, "error")):
            threading.Thread(
                target=self._capture_output,
                args=(stream, level),
                name=f"maple-proxy-{level}-{proc.pid}",
                daemon=True,
            ).start()

        logger.info(f"Spawned maple-proxy {self.version} with PID {proc.pid} on port {self.port}")
        return proc

    def _capture_output(self, stream, level: str):
        """Forward child output to logging, one line at a time."""
        try:
            for line in iter(stream.readline, b""):
                decoded = line.decode("utf-8", errors="replace").rstrip()
                if not decoded:
                    continue

                # Detect level from content
                detected_level = level
                lower = decoded.lower()
                if "error" in lower or "panic" in lower:
                    detected_level = "error"
                elif "warn" in lower:
                    detected_level = "warning"

                child_logger.log(logging.getLevelName(detected_level.upper()), f"[maple-proxy] {decoded}")
        except (OSError, ValueError) as e:
            logger.debug(f"Output capture for maple-proxy ended: {e}")
        finally:
            stream.close()

    def _wait_until_healthy(self, proc: subprocess.Popen, stop_event: threading.Event):
        """Poll /health until it succeeds, failing fast if the child exits."""
        timeout = settings.health_timeout
        deadline = time.monotonic() + timeout
        with httpx.Client(timeout=1.0, trust_env=False) as client:
            while True:
                returncode = proc.poll()
                if returncode is not None:
                    if returncode < 0:
                        message = f"maple-proxy killed by {describe_exit(returncode)} during startup"
                    else:
                        message = f"maple-proxy exited immediately with code {returncode}"
                    raise StartupError(message, exit_code=returncode)
                if stop_event.is_set():
                    raise StartupError("maple-proxy was stopped during startup")
                if is_healthy(self.port, client, self.config.host):
                    return
                if time.monotonic() >= deadline:
                    raise StartupError(f"maple-proxy did not become healthy within {timeout:g}s")
                stop_event.wait(settings.health_interval)

    def _arm_watcher(self, proc: subprocess.Popen, stop_event: threading.Event):
        threading.Thread(
            target=self._watch,
            args=(proc, stop_event),
            name=f"maple-proxy-watcher-{proc.pid}",
            daemon=True,
        ).start()

    def _watch(self, proc: subprocess.Popen, stop_event: threading.Event):
        returncode = proc.wait()
        with self._lock:
            if stop_event.is_set() or self._instance is None or self._instance.process is not proc:
                return
            self._instance = None
            if is_deliberate_exit(returncode):
                logger.info(f"maple-proxy stopped by {describe_exit(returncode)}")
                self._state = ProxyState.IDLE
                return
            self._state = ProxyState.RESTARTING

        logger.error(f"maple-proxy crashed with {describe_exit(returncode)}")
        self._recover(stop_event)

    def _recover(self, stop_event: threading.Event):
        """Restart the child with linear backoff until healthy or out of attempts."""
        max_attempts = settings.max_restart_attempts
        while True:
            with self._lock:
                if stop_event.is_set():
                    return
                if self._restart_attempts >= max_attempts:
                    self._state = ProxyState.FAILED
                    logger.error(
                        f"maple-proxy crashed {max_attempts} times, giving up. "
                        f"Restart the sidecar to try again."
                    )
                    return
                self._restart_attempts += 1
                attempt = self._restart_attempts

            delay = settings.restart_backoff * attempt
            logger.info(f"Restarting maple-proxy in {delay:g}s (attempt {attempt}/{max_attempts})...")
            if self._sleep(delay, stop_event):
                return

            with self._lock:
                if stop_event.is_set():
                    return
                try:
                    proc = self._spawn()
                except StartupError as e:
                    logger.error(f"Failed to restart maple-proxy: {e}")
                    continue
                instance = RunningInstance(process=proc, port=self.port, version=self.version)
                self._instance = instance

            try:
                self._wait_until_healthy(proc, stop_event)
            except StartupError as e:
                self._discard(proc)
                with self._lock:
                    if self._instance is instance:
                        self._instance = None
                if stop_event.is_set():
                    return
                logger.error(f"Failed to restart maple-proxy: {e}")
                continue

            with self._lock:
                if stop_event.is_set():
                    return
                self._restart_attempts = 0
                self._state = ProxyState.HEALTHY
                self._arm_watcher(proc, stop_event)
            logger.info(f"maple-proxy restarted on http://{self.config.host}:{self.port}")
            return

    def _sleep(self, delay: float, stop_event: threading.Event) -> bool:
        """Wait out a restart backoff. Returns True if a stop was requested meanwhile."""
        return stop_event.wait(delay)

    @staticmethod
    def _force_kill(proc: subprocess.Popen):
        if proc.poll() is None:
            logger.warning(f"maple-proxy (pid {proc.pid}) did not stop gracefully, forcing kill")
            try:
                proc.kill()
            except ProcessLookupError:
                pass

    @staticmethod
    def _discard(proc: subprocess.Popen):
        if proc.poll() is None:
            try:
                proc.kill()
            except ProcessLookupError:
                return
        try:
            proc.wait(timeout=5)
        except subprocess.TimeoutExpired:
            logger.warning(f"maple-proxy (pid {proc.pid}) did not exit after SIGKILL")

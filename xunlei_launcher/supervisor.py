"""
Backend supervisor.

Runs the Xunlei daemon as a child process and stops it when the launcher
receives SIGINT, SIGHUP or SIGTERM.

State transitions:
    STARTING -> RUNNING -> STOPPING -> STOPPED

The bind mount is set up in STARTING and always torn down in STOPPED. A
mount failure is never retried: the daemon cannot run without it.
"""

import logging
import os
import queue
import signal
import subprocess
from enum import Enum, auto
from typing import Callable, Iterable, Optional

from .config import BackendEnvironment, Settings
from .mount import MountBinder

logger = logging.getLogger(__name__)

TERMINATION_SIGNALS = (signal.SIGINT, signal.SIGHUP, signal.SIGTERM)


class SupervisorState(Enum):
    """State machine for the backend lifecycle."""
    STARTING = auto()  # Preparing directories and the bind mount
    RUNNING = auto()   # Daemon spawned, waiting for a termination signal
    STOPPING = auto()  # Signalling the daemon
    STOPPED = auto()   # Mount released


class SupervisorError(Exception):
    """Fatal error: the daemon could not be started or stopped."""
    pass


class SignalQueue:
    """
    Delivers OS signals to whoever is blocked in wait().

    Handlers only enqueue the signal number; SimpleQueue.put is reentrant
    so it is safe to call from a signal handler.
    """

    def __init__(self):
        self._queue: queue.SimpleQueue = queue.SimpleQueue()
        self._previous: dict[int, object] = {}

    def _handler(self, signum, _frame) -> None:
        self._queue.put(signum)

    def install(self, signals: Iterable[int]) -> None:
        """Route the given signals here. Must be called from the main thread."""
        for signum in signals:
            self._previous[signum] = signal.signal(signum, self._handler)

    def restore(self) -> None:
        for signum, handler in self._previous.items():
            signal.signal(signum, handler)
        self._previous.clear()

    def put(self, signum: int) -> None:
        self._queue.put(signum)

    def wait(self) -> int:
        return self._queue.get()


class ProcessSupervisor:
    """
    Owns the daemon process for its whole lifetime.

    Collaborators are injectable so the signal/kill/unmount sequence can be
    exercised without root or a real daemon.
    """

    def __init__(
        self,
        settings: Settings,
        environment: BackendEnvironment,
        binder: Optional[MountBinder] = None,
        signals: Optional[SignalQueue] = None,
        spawn: Callable[..., subprocess.Popen] = subprocess.Popen,
        kill: Callable[[int, int], None] = os.kill,
    ):
        self.settings = settings
        self.environment = environment
        self.binder = binder or MountBinder()
        self.signals = signals or SignalQueue()
        self._spawn = spawn
        self._kill = kill
        self.state = SupervisorState.STARTING
        self.process: Optional[subprocess.Popen] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def run(self) -> None:
        """Start the daemon, block until a termination signal, stop it."""
        self.state = SupervisorState.STARTING
        self._prepare_var_dir()
        self.binder.bind(
            self.settings.download_path, self.settings.mount_bind_download_path,
        )

        self.signals.install(TERMINATION_SIGNALS)
        try:
            self.process = self._spawn_backend()
            self.state = SupervisorState.RUNNING
            logger.info("Xunlei backend PID: %d", self.process.pid)

            received = self._wait_for_termination()
            logger.info("Received %s, stopping backend", signal.Signals(received).name)

            self.state = SupervisorState.STOPPING
            self._stop_backend(self.process)
        finally:
            self.signals.restore()
            self.binder.unbind(self.settings.mount_bind_download_path)
            self.state = SupervisorState.STOPPED

    def _prepare_var_dir(self) -> None:
        var_dir = self.settings.layout.var
        if var_dir.exists():
            return
        try:
            var_dir.mkdir(parents=True)
            os.chmod(var_dir, 0o777)
            os.chown(var_dir, self.settings.uid, self.settings.gid)
        except OSError as e:
            raise SupervisorError(f"Cannot prepare {var_dir}: {e}") from e

    def _spawn_backend(self) -> subprocess.Popen:
        layout = self.settings.layout
        cmd = [
            str(layout.launcher_exe),
            f"-launcher_listen={layout.launcher_sock}",
            f"-pid={layout.pid_file}",
            f"-logfile={layout.launch_log_file}",
        ]
        popen_kwargs = {
            "cwd": str(layout.target),
            "env": {**os.environ, **self.environment.as_dict()},
            **self.settings.process_identity(),
        }
        if not self.settings.debug:
            popen_kwargs.update(
                stdin=subprocess.DEVNULL,
                stdout=subprocess.DEVNULL,
                stderr=subprocess.DEVNULL,
            )

        logger.info("Start Xunlei backend server")
        try:
            return self._spawn(cmd, **popen_kwargs)
        except (OSError, subprocess.SubprocessError) as e:
            raise SupervisorError(f"Failed to start {cmd[0]}: {e}") from e

    def _wait_for_termination(self) -> int:
        while True:
            signum = self.signals.wait()
            if signum in TERMINATION_SIGNALS:
                return signum
            logger.warning("Ignoring unhandled signal %s", signum)

    def _stop_backend(self, process: subprocess.Popen) -> None:
        """
        Ask the daemon to stop with SIGINT, escalating to SIGTERM only if
        SIGINT cannot be delivered. Both failing is fatal.
        """
        pid = process.pid
        try:
            self._kill(pid, signal.SIGINT)
            logger.info("Sent SIGINT to backend (PID %d)", pid)
        except OSError as e:
            logger.warning("Backend SIGINT failed: %s, sending SIGTERM", e)
            try:
                self._kill(pid, signal.SIGTERM)
            except OSError as e2:
                raise SupervisorError(
                    f"Backend (PID {pid}) could not be signalled: {e2}"
                ) from e2
            logger.info("Sent SIGTERM to backend (PID %d)", pid)

        try:
            process.wait(timeout=self.settings.stop_timeout)
            logger.info("The backend service has been terminated")
        except subprocess.TimeoutExpired:
            logger.warning(
                "Backend (PID %d) still running after %.0fs",
                pid, self.settings.stop_timeout,
            )

"""
Supervised child processes.

Runs one engine stage as a child process in its own process group, streams
stdout and stderr line by line, and enforces a timeout and cancellation.

Termination always targets the whole group: SIGTERM first, SIGKILL after
the grace period if the group is still alive. vips spawns helper threads
only, but wrapper scripts around it spawn real children.
"""

import logging
import os
import signal
import subprocess
import threading
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, List, Optional

from ..jobs.cancellation import CancellationToken
from .errors import EngineExecutionError

logger = logging.getLogger(__name__)


LineCallback = Callable[[str, str], None]


@dataclass
class ProcessResult:
    """Outcome of one supervised child process."""

    argv: List[str]
    exit_code: Optional[int]
    duration: float
    stdout_tail: List[str] = field(default_factory=list)
    stderr_tail: List[str] = field(default_factory=list)
    timed_out: bool = False
    cancelled: bool = False

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out and not self.cancelled

    @property
    def stderr_text(self) -> str:
        return "\n".join(self.stderr_tail)


class ProcessSupervisor:
    """
    Spawns and supervises engine processes.

    Stateless between runs; one instance is shared by all workers.

    Args:
        kill_grace: Seconds between SIGTERM and SIGKILL
        tail_lines: Lines of stdout/stderr kept for error reporting
    """

    def __init__(self, kill_grace: float = 2.0, tail_lines: int = 50):
        self.kill_grace = kill_grace
        self.tail_lines = tail_lines

    def run(
        self,
        argv: List[str],
        timeout: Optional[float] = None,
        token: Optional[CancellationToken] = None,
        on_line: Optional[LineCallback] = None,
        env: Optional[dict] = None,
    ) -> ProcessResult:
        """
        Run a command to completion.

        Args:
            argv: Command line
            timeout: Seconds before the group is terminated (None = no limit)
            token: Cancellation token; firing it terminates the group
            on_line: Called as on_line(stream_name, line) from reader threads

        Returns:
            ProcessResult; timeouts and cancellations are flagged, not raised

        Raises:
            EngineExecutionError: If the process cannot be spawned
        """
        token = token or CancellationToken()
        started = time.monotonic()

        logger.info(f"[Process] Executing: {' '.join(argv)}")
        try:
            proc = subprocess.Popen(
                argv,
                stdin=subprocess.DEVNULL,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                text=True,
                errors="replace",
                bufsize=1,
                env=env,
                start_new_session=True,
            )
        except OSError as e:
            raise EngineExecutionError(argv[0], f"failed to start: {e}") from e

        logger.debug(f"[Process] Started PID {proc.pid}")

        stdout_tail: Deque[str] = deque(maxlen=self.tail_lines)
        stderr_tail: Deque[str] = deque(maxlen=self.tail_lines)
        readers = [
            self._start_reader(proc.stdout, "stdout", stdout_tail, on_line),
            self._start_reader(proc.stderr, "stderr", stderr_tail, on_line),
        ]

        # Fires immediately if the token was cancelled before spawn
        unregister = token.register(lambda: self.terminate(proc))

        timed_out = False
        try:
            exit_code = proc.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            timed_out = True
            logger.warning(f"[Process] PID {proc.pid} exceeded {timeout:.0f}s, terminating")
            self.terminate(proc)
            exit_code = proc.wait()
        finally:
            unregister()

        for reader in readers:
            reader.join(self.kill_grace + 1.0)

        duration = time.monotonic() - started
        cancelled = token.cancelled and not timed_out
        logger.info(
            f"[Process] PID {proc.pid} exited with code {exit_code} after {duration:.1f}s"
            + (" (cancelled)" if cancelled else "")
        )

        return ProcessResult(
            argv=list(argv),
            exit_code=exit_code,
            duration=duration,
            stdout_tail=list(stdout_tail),
            stderr_tail=list(stderr_tail),
            timed_out=timed_out,
            cancelled=cancelled,
        )

    def terminate(self, proc: subprocess.Popen) -> None:
        """
        SIGTERM the process group, then SIGKILL it after the grace period.

        Does not block: escalation runs on a timer thread.
        """
        if proc.poll() is not None:
            return
        logger.info(f"[Process] Sending SIGTERM to process group {proc.pid}")
        self._signal_group(proc, signal.SIGTERM)

        timer = threading.Timer(self.kill_grace, self._kill_if_alive, args=(proc,))
        timer.daemon = True
        timer.start()

    def _kill_if_alive(self, proc: subprocess.Popen) -> None:
        if proc.poll() is not None:
            return
        logger.warning(f"[Process] PID {proc.pid} did not terminate, sending SIGKILL")
        self._signal_group(proc, signal.SIGKILL)

    def _signal_group(self, proc: subprocess.Popen, sig: int) -> None:
        try:
            if hasattr(os, "killpg"):
                os.killpg(proc.pid, sig)
            elif sig == signal.SIGTERM:
                proc.terminate()
            else:
                proc.kill()
        except ProcessLookupError:
            pass  # Process already dead

    def _start_reader(
        self,
        stream,
        name: str,
        tail: Deque[str],
        on_line: Optional[LineCallback],
    ) -> threading.Thread:
        def pump() -> None:
            with stream:
                for raw in stream:
                    line = raw.rstrip("\r\n")
                    if not line:
                        continue
                    tail.append(line)
                    if on_line is not None:
                        try:
                            on_line(name, line)
                        except Exception:
                            logger.exception(f"[Process] Line handler failed on {name}")

        thread = threading.Thread(target=pump, name=f"ProcessReader-{name}", daemon=True)
        thread.start()
        return thread

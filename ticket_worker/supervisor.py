"""
Process Supervisor

Runs one external CLI invocation with a bounded execution time.

State machine per run:

    RUNNING --timeout--> TERMINATE_REQUESTED --grace--> KILL_REQUESTED
       |                        |                             |
       +------------------------+------------ exit -----------+--> EXITED

Timers are loop.call_later handles on the event loop's monotonic clock. The
run settles exactly once, on process exit; settling cancels whichever timer is
pending so nothing fires after the result is known. Signals go to the child's
process group (the child is started in its own session) so helpers spawned
by the CLI are terminated with it.
"""

import asyncio
import codecs
import logging
import os
import signal
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, List, Optional, Sequence, Union

from .errors import ProcessExitError, ProcessTimeoutError, SpawnError

logger = logging.getLogger("supervisor")

OUTPUT_CHUNK_SIZE = 4096
# After exit the pipe normally hits EOF at once; a grandchild that escaped the
# process group could keep it open.
OUTPUT_DRAIN_SECONDS = 5.0

OutputCallback = Callable[[str], None]


class SupervisorState(str, Enum):
    RUNNING = "running"
    TERMINATE_REQUESTED = "terminate_requested"
    KILL_REQUESTED = "kill_requested"
    EXITED = "exited"


class ErrorKind(str, Enum):
    SPAWN = "spawn"
    EXIT = "exit"
    TIMEOUT = "timeout"


@dataclass
class InvocationResult:
    """Outcome of one supervised invocation."""
    success: bool
    output: str
    exit_code: Optional[int] = None
    error_kind: Optional[ErrorKind] = None
    error_message: Optional[str] = None
    duration_seconds: float = 0.0
    signals_sent: List[str] = field(default_factory=list)
    command: str = ""
    timeout_seconds: float = 0.0

    def raise_for_error(self) -> None:
        """Raise the error matching error_kind; no-op on success."""
        if self.success:
            return
        if self.error_kind is ErrorKind.SPAWN:
            raise SpawnError(self.command, RuntimeError(self.error_message or "spawn failed"))
        if self.error_kind is ErrorKind.TIMEOUT:
            raise ProcessTimeoutError(self.timeout_seconds, output=self.output)
        raise ProcessExitError(self.exit_code, output=self.output)


class SupervisedRun:
    """Timer-driven termination state for a single child process."""

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        timeout: float,
        grace: float,
        loop: asyncio.AbstractEventLoop,
    ):
        self.process = process
        self.state = SupervisorState.RUNNING
        self.timed_out = False
        self.signals_sent: List[str] = []
        self._timeout = timeout
        self._grace = grace
        self._loop = loop
        self._timer: Optional[asyncio.TimerHandle] = None

    @property
    def has_pending_timer(self) -> bool:
        return self._timer is not None and not self._timer.cancelled()

    def arm(self) -> None:
        self._timer = self._loop.call_later(self._timeout, self._on_timeout)

    def settle(self) -> bool:
        """Move to EXITED and cancel the pending timer. False if already settled."""
        if self.state is SupervisorState.EXITED:
            return False
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self.state = SupervisorState.EXITED
        return True

    def kill_now(self) -> None:
        if self.process.returncode is None:
            self._send(signal.SIGKILL)

    def child_exited(self) -> bool:
        """
        True once the child has terminated, reaped or not.

        asyncio sets returncode only after its watcher reaps the child, so an
        exited child can still read as running. waitid with WNOWAIT sees the
        zombie and leaves the reaping to asyncio.
        """
        if self.process.returncode is not None:
            return True
        if not hasattr(os, "waitid"):
            return False
        try:
            info = os.waitid(os.P_PID, self.process.pid, os.WEXITED | os.WNOHANG | os.WNOWAIT)
        except ChildProcessError:
            # Already reaped by the child watcher.
            return True
        return info is not None

    def _on_timeout(self) -> None:
        self._timer = None
        if self.state is not SupervisorState.RUNNING or self.child_exited():
            return
        self.timed_out = True
        self.state = SupervisorState.TERMINATE_REQUESTED
        logger.warning(f"pid {self.process.pid} exceeded {self._timeout:g}s, sending SIGTERM")
        self._send(signal.SIGTERM)
        self._timer = self._loop.call_later(self._grace, self._on_grace_expired)

    def _on_grace_expired(self) -> None:
        self._timer = None
        if self.state is not SupervisorState.TERMINATE_REQUESTED or self.child_exited():
            return
        self.state = SupervisorState.KILL_REQUESTED
        logger.warning(f"pid {self.process.pid} still running {self._grace:g}s after SIGTERM, sending SIGKILL")
        self._send(signal.SIGKILL)

    def _send(self, sig: signal.Signals) -> None:
        self.signals_sent.append(sig.name)
        try:
            if hasattr(os, "killpg"):
                os.killpg(self.process.pid, sig)
            else:
                self.process.send_signal(sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            self.process.send_signal(sig)


class ProcessSupervisor:
    """Spawns and supervises external CLI invocations."""

    def __init__(self, default_timeout: float = 30 * 60, default_grace: float = 10.0):
        self._default_timeout = default_timeout
        self._default_grace = default_grace

    async def invoke(
        self,
        command: str,
        args: Sequence[str],
        cwd: Union[str, Path],
        env: Optional[Dict[str, str]] = None,
        timeout: Optional[float] = None,
        grace: Optional[float] = None,
        on_output: Optional[OutputCallback] = None,
    ) -> InvocationResult:
        """
        Run command with args in cwd and wait for it to settle.

        Never raises for process failures; inspect the result or call
        result.raise_for_error(). Cancelling the awaiting task kills the child.
        """
        timeout = self._default_timeout if timeout is None else timeout
        grace = self._default_grace if grace is None else grace
        loop = asyncio.get_running_loop()
        started = loop.time()

        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                cwd=str(cwd),
                env=env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
                start_new_session=True,
            )
        except (OSError, ValueError) as e:
            error = SpawnError(command, e)
            logger.error(error.message)
            return InvocationResult(
                success=False,
                output="",
                error_kind=ErrorKind.SPAWN,
                error_message=error.message,
                duration_seconds=loop.time() - started,
                command=command,
                timeout_seconds=timeout,
            )

        logger.info(f"Spawned {command} (pid {process.pid}, {len(args)} args, timeout {timeout:g}s)")
        run = SupervisedRun(process, timeout, grace, loop)
        run.arm()
        chunks: List[str] = []
        reader = asyncio.create_task(self._pump_output(process.stdout, chunks, on_output))

        try:
            exit_code = await process.wait()
        except asyncio.CancelledError:
            run.settle()
            run.kill_now()
            reader.cancel()
            raise
        run.settle()

        try:
            await asyncio.wait_for(reader, timeout=OUTPUT_DRAIN_SECONDS)
        except asyncio.TimeoutError:
            logger.warning(f"Output of pid {process.pid} still open after exit, detaching")

        output = "".join(chunks)
        duration = loop.time() - started
        result = InvocationResult(
            success=False,
            output=output,
            exit_code=exit_code,
            duration_seconds=duration,
            signals_sent=list(run.signals_sent),
            command=command,
            timeout_seconds=timeout,
        )

        if run.timed_out:
            result.error_kind = ErrorKind.TIMEOUT
            result.error_message = f"Process timed out after {timeout:g}s"
            logger.warning(f"pid {process.pid} terminated after timeout ({', '.join(run.signals_sent)})")
        elif exit_code == 0:
            result.success = True
            logger.info(f"pid {process.pid} exited cleanly in {duration:.1f}s")
        else:
            result.error_kind = ErrorKind.EXIT
            result.error_message = f"Process exited with code {exit_code}"
            logger.error(f"pid {process.pid} exited with code {exit_code} after {duration:.1f}s")

        return result

    @staticmethod
    async def _pump_output(
        stream: asyncio.StreamReader,
        chunks: List[str],
        on_output: Optional[OutputCallback],
    ) -> None:
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        while True:
            data = await stream.read(OUTPUT_CHUNK_SIZE)
            final = not data
            text = decoder.decode(data, final=final)
            if text:
                chunks.append(text)
                if on_output is not None:
                    try:
                        on_output(text)
                    except Exception as e:
                        logger.warning(f"Output callback failed: {e}")
            if final:
                break

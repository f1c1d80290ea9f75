"""
Process supervisor: at most one live engine process per slot.

Two slots exist:
- server: the long-lived sd-server, ready once it announces its port
- cli: one sd-cli invocation per generation request

State machine per slot:

    idle -> starting -> running -> (completed | failed | cancelled) -> idle

A start request is rejected with ResourceBusyError unless the slot is idle.
The check and the transition to "starting" happen without an intervening
await, so the single event loop needs no extra lock.
"""

import asyncio
import codecs
import logging
import os
import re
import signal
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Deque, Dict, List, Optional, Pattern, Sequence, Union

from flaxeo.backend.errors import ResourceBusyError, SpawnError
from flaxeo.backend.services.log_buffer import LogBuffer

logger = logging.getLogger(__name__)

# sd-server prints e.g. "listening on: 127.0.0.1:1234"
DEFAULT_READY_PATTERN = r"listening on:?\s*\S*?:(\d+)"

OUTPUT_CHUNK_LIMIT = 2000
SCAN_LINE_LIMIT = 4096


class Slot(str, Enum):
    """Logical execution lanes."""

    SERVER = "server"
    CLI = "cli"


class ProcessState(str, Enum):
    """Lifecycle states of a slot."""

    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATES = {ProcessState.STARTING, ProcessState.RUNNING}


class ProcessListener:
    """Receives output chunks and state changes. Methods are no-ops by default."""

    async def on_process_output(self, slot: str, text: str) -> None:
        pass

    async def on_process_state(self, slot: str, state: ProcessState, return_code: Optional[int] = None) -> None:
        pass


@dataclass
class ProcessOutcome:
    """Terminal result of one supervised run."""

    state: ProcessState
    return_code: Optional[int] = None
    output: str = ""
    artifact: Optional[Path] = None
    cancel_requested: bool = False

    @property
    def completed(self) -> bool:
        return self.state is ProcessState.COMPLETED

    @property
    def cancelled(self) -> bool:
        return self.state is ProcessState.CANCELLED

    def output_tail(self, max_chars: int = 4000) -> str:
        return self.output[-max_chars:]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "state": self.state.value,
            "return_code": self.return_code,
            "artifact": str(self.artifact) if self.artifact else None,
        }


@dataclass
class ManagedProcess:
    """One OS process owned by a slot."""

    slot: str
    command: List[str]
    cwd: Optional[Path] = None
    expected_artifact: Optional[Path] = None
    resources: Any = None
    process: Optional[asyncio.subprocess.Process] = None
    state: ProcessState = ProcessState.STARTING
    cancel_requested: bool = False
    port: Optional[int] = None
    announcement: Optional[str] = None
    started_at: datetime = field(default_factory=datetime.now)
    ready: asyncio.Event = field(default_factory=asyncio.Event)
    finished: Optional[asyncio.Future] = None
    output: Deque[str] = field(default_factory=lambda: deque(maxlen=OUTPUT_CHUNK_LIMIT))

    @property
    def pid(self) -> Optional[int]:
        return self.process.pid if self.process else None

    def output_text(self) -> str:
        return "".join(self.output)


class ProcessSupervisor:
    """
    Owns the lifecycle of zero or one child process for a single slot.

    Dependencies (log buffer, listener) are injected so that each slot can be
    exercised in isolation.
    """

    def __init__(
        self,
        slot: Union[Slot, str],
        log_buffer: LogBuffer,
        listener: Optional[ProcessListener] = None,
        ready_pattern: Optional[str] = None,
        ready_timeout: float = 30.0,
        terminate_timeout: float = 5.0,
    ):
        self.slot = slot.value if isinstance(slot, Slot) else str(slot)
        self._log_buffer = log_buffer
        self._listener = listener
        self._ready_pattern: Optional[Pattern[str]] = (
            re.compile(ready_pattern, re.IGNORECASE) if ready_pattern else None
        )
        self._ready_timeout = ready_timeout
        self._terminate_timeout = terminate_timeout
        self._state = ProcessState.IDLE
        self._current: Optional[ManagedProcess] = None
        self._watcher: Optional[asyncio.Task] = None
        self.last_outcome: Optional[ProcessOutcome] = None

    # ------------------------------------------------------------------
    # Introspection
    # ------------------------------------------------------------------

    @property
    def state(self) -> ProcessState:
        return self._state

    @property
    def current(self) -> Optional[ManagedProcess]:
        return self._current

    @property
    def is_idle(self) -> bool:
        return self._state is ProcessState.IDLE

    @property
    def is_active(self) -> bool:
        return self._state in ACTIVE_STATES

    @property
    def is_ready(self) -> bool:
        return self._current is not None and self._current.ready.is_set()

    def get_status(self) -> Dict[str, Any]:
        current = self._current
        return {
            "slot": self.slot,
            "state": self._state.value,
            "running": self.is_active,
            "ready": self.is_ready,
            "pid": current.pid if current else None,
            "port": current.port if current else None,
            "command": current.command if current else None,
            "started_at": current.started_at.isoformat() if current else None,
            "last_outcome": self.last_outcome.to_dict() if self.last_outcome else None,
        }

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(
        self,
        command: Sequence[str],
        cwd: Optional[Path] = None,
        expected_artifact: Optional[Path] = None,
        resources: Any = None,
        env: Optional[Dict[str, str]] = None,
    ) -> ManagedProcess:
        """
        Spawn a process in this slot.

        Args:
            command: Executable followed by its arguments
            cwd: Working directory for the child
            expected_artifact: File whose presence marks success
            resources: Optional TempResourceSet released when the process exits
            env: Extra environment variables for the child

        Returns:
            The running ManagedProcess

        Raises:
            ResourceBusyError: if the slot is not idle
            SpawnError: if the executable could not be started
        """
        if self._state is not ProcessState.IDLE:
            raise ResourceBusyError(
                f"A {self.slot} process is already {self._state.value}",
            )

        managed = ManagedProcess(
            slot=self.slot,
            command=[str(part) for part in command],
            cwd=Path(cwd) if cwd else None,
            expected_artifact=Path(expected_artifact) if expected_artifact else None,
            resources=resources,
        )
        managed.finished = asyncio.get_running_loop().create_future()
        self._current = managed
        self._state = ProcessState.STARTING
        await self._notify_state(ProcessState.STARTING)

        logger.info(f"[{self.slot}] Command: {managed.command[0]}")
        logger.info(f"[{self.slot}] Args: {' '.join(managed.command[1:])}")
        logger.info(f"[{self.slot}] Working directory: {managed.cwd}")

        try:
            if managed.cwd is not None and not managed.cwd.is_dir():
                raise SpawnError(
                    f"Working directory not found: {managed.cwd}",
                    code="SPAWN_FAILED",
                )
            managed.process = await asyncio.create_subprocess_exec(
                *managed.command,
                cwd=str(managed.cwd) if managed.cwd else None,
                env={**os.environ, **env} if env else None,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except SpawnError:
            await self._abort_start(managed)
            raise
        except FileNotFoundError as e:
            await self._abort_start(managed)
            raise SpawnError(
                f"Executable not found: {managed.command[0]}",
                code="BINARY_NOT_FOUND",
            ) from e
        except PermissionError as e:
            await self._abort_start(managed)
            raise SpawnError(
                f"Executable is not runnable: {managed.command[0]} ({e})",
                code="SPAWN_FAILED",
            ) from e
        except OSError as e:
            await self._abort_start(managed)
            raise SpawnError(f"Failed to start {managed.command[0]}: {e}", code="SPAWN_FAILED") from e

        managed.state = ProcessState.RUNNING
        self._state = ProcessState.RUNNING
        logger.info(f"[{self.slot}] Started pid {managed.pid}")
        await self._notify_state(ProcessState.RUNNING)

        if managed.cancel_requested:
            self._send_signal(managed, force=False)

        self._watcher = asyncio.create_task(self._watch(managed))
        return managed

    async def wait(self, managed: Optional[ManagedProcess] = None) -> ProcessOutcome:
        """Await the terminal outcome of a run (the current one by default)."""
        managed = managed or self._current
        if managed is None or managed.finished is None:
            if self.last_outcome is None:
                raise RuntimeError(f"No {self.slot} process has been started")
            return self.last_outcome
        return await asyncio.shield(managed.finished)

    async def run(
        self,
        command: Sequence[str],
        cwd: Optional[Path] = None,
        expected_artifact: Optional[Path] = None,
        resources: Any = None,
    ) -> ProcessOutcome:
        """Start a process and wait for its terminal state."""
        managed = await self.start(command, cwd=cwd, expected_artifact=expected_artifact, resources=resources)
        return await self.wait(managed)

    async def cancel(self, force: bool = False) -> bool:
        """
        Request termination of the live process.

        Args:
            force: Send SIGKILL instead of SIGTERM

        Returns:
            True if a live process was signalled, False if the slot was idle
        """
        managed = self._current
        if managed is None or self._state not in ACTIVE_STATES:
            return False

        managed.cancel_requested = True
        logger.info(f"[{self.slot}] Cancelling pid {managed.pid} ({'SIGKILL' if force else 'SIGTERM'})")
        if managed.process is not None:
            self._send_signal(managed, force)
        return True

    async def stop(self, timeout: Optional[float] = None) -> Optional[ProcessOutcome]:
        """Terminate, escalating to a hard kill when the process ignores SIGTERM."""
        managed = self._current
        if managed is None or not await self.cancel():
            return None

        timeout = self._terminate_timeout if timeout is None else timeout
        try:
            return await asyncio.wait_for(self.wait(managed), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[{self.slot}] pid {managed.pid} ignored SIGTERM, killing")
            self._send_signal(managed, force=True)
            return await self.wait(managed)

    async def wait_ready(self, timeout: Optional[float] = None) -> bool:
        """
        Wait until the live process announces readiness.

        Falls back to "ready" once the timeout passes while the process is
        still running. Returns False if the process exited first.
        """
        managed = self._current
        if managed is None or managed.finished is None:
            return False
        if managed.ready.is_set():
            return True

        timeout = self._ready_timeout if timeout is None else timeout
        ready_task = asyncio.ensure_future(managed.ready.wait())
        try:
            await asyncio.wait(
                {ready_task, managed.finished},
                timeout=timeout,
                return_when=asyncio.FIRST_COMPLETED,
            )
        finally:
            ready_task.cancel()

        if managed.ready.is_set():
            return True
        if managed.finished.done():
            return False
        logger.info(f"[{self.slot}] No readiness line after {timeout}s, assuming ready")
        managed.ready.set()
        return True

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    async def _abort_start(self, managed: ManagedProcess) -> None:
        self._release_resources(managed)
        if managed.finished is not None and not managed.finished.done():
            managed.finished.set_result(ProcessOutcome(state=ProcessState.FAILED))
        self._current = None
        self._state = ProcessState.IDLE
        await self._notify_state(ProcessState.IDLE)

    def _send_signal(self, managed: ManagedProcess, force: bool) -> None:
        process = managed.process
        if process is None or process.returncode is not None:
            return
        try:
            if force:
                process.kill()
            else:
                process.send_signal(signal.SIGTERM)
        except ProcessLookupError:
            pass

    async def _pump(self, managed: ManagedProcess, stream: Optional[asyncio.StreamReader]) -> None:
        if stream is None:
            return
        # Multibyte characters may straddle two reads
        decoder = codecs.getincrementaldecoder("utf-8")(errors="replace")
        partial_line = ""
        while True:
            chunk = await stream.read(4096)
            text = decoder.decode(chunk, final=not chunk)
            if text:
                await self._emit(managed, text)
                partial_line = self._scan_lines(managed, partial_line + text)
            if not chunk:
                break
        if partial_line:
            self._scan_line(managed, partial_line)

    async def _emit(self, managed: ManagedProcess, text: str) -> None:
        managed.output.append(text)
        self._log_buffer.append(self.slot, text)
        logger.debug(f"[{self.slot}] {text.rstrip()}")
        if self._listener is not None:
            try:
                await self._listener.on_process_output(self.slot, text)
            except Exception as e:
                logger.error(f"[{self.slot}] Output listener failed: {e}")

    def _scan_lines(self, managed: ManagedProcess, pending: str) -> str:
        """Scan every complete line; return the unfinished remainder."""
        *lines, remainder = pending.split("\n")
        for line in lines:
            self._scan_line(managed, line)
        return remainder[-SCAN_LINE_LIMIT:]

    def _scan_line(self, managed: ManagedProcess, line: str) -> None:
        if self._ready_pattern is None or managed.ready.is_set():
            return
        match = self._ready_pattern.search(line)
        if match:
            managed.announcement = match.group(0)
            if match.groups():
                try:
                    managed.port = int(match.group(1))
                except (TypeError, ValueError):
                    pass
            managed.ready.set()
            logger.info(f"[{self.slot}] Ready (port {managed.port})")

    def _classify(self, managed: ManagedProcess, return_code: Optional[int]) -> ProcessOutcome:
        artifact_present = managed.expected_artifact is None or managed.expected_artifact.exists()
        if return_code == 0 and artifact_present:
            state = ProcessState.COMPLETED
        elif managed.cancel_requested:
            state = ProcessState.CANCELLED
        else:
            state = ProcessState.FAILED
        return ProcessOutcome(
            state=state,
            return_code=return_code,
            output=managed.output_text(),
            artifact=managed.expected_artifact if state is ProcessState.COMPLETED else None,
            cancel_requested=managed.cancel_requested,
        )

    async def _watch(self, managed: ManagedProcess) -> None:
        process = managed.process
        outcome = ProcessOutcome(state=ProcessState.FAILED, cancel_requested=managed.cancel_requested)
        try:
            readers = [
                asyncio.create_task(self._pump(managed, process.stdout)),
                asyncio.create_task(self._pump(managed, process.stderr)),
            ]
            return_code = await process.wait()
            _, pending = await asyncio.wait(readers, timeout=2.0)
            for task in pending:
                task.cancel()

            outcome = self._classify(managed, return_code)
            if return_code == 0 and outcome.state is ProcessState.FAILED:
                note = f"Process exited cleanly but {managed.expected_artifact} was not written\n"
                self._log_buffer.append(self.slot, note)
                outcome.output += note
            self._log_buffer.append(self.slot, f"EXIT: {return_code}\n")
            logger.info(f"[{self.slot}] Process exited with code {return_code} -> {outcome.state.value}")
        except Exception as e:
            logger.error(f"[{self.slot}] Supervisor error: {e}", exc_info=True)
            outcome.output = managed.output_text() + f"\n{e}"
        finally:
            managed.state = outcome.state
            self.last_outcome = outcome
            self._state = outcome.state
            self._release_resources(managed)
            await self._notify_state(outcome.state, outcome.return_code)
            if managed.finished is not None and not managed.finished.done():
                managed.finished.set_result(outcome)
            if self._current is managed:
                self._current = None
                self._state = ProcessState.IDLE
                await self._notify_state(ProcessState.IDLE)

    def _release_resources(self, managed: ManagedProcess) -> None:
        if managed.resources is not None:
            managed.resources.release()

    async def _notify_state(self, state: ProcessState, return_code: Optional[int] = None) -> None:
        if self._listener is None:
            return
        try:
            await self._listener.on_process_state(self.slot, state, return_code)
        except Exception as e:
            logger.error(f"[{self.slot}] State listener failed: {e}")

"""
Encoder Process Supervisor
==========================

Spawns, monitors and tears down external encoder children.

Each child is wrapped in an EncoderHandle that owns its stdio:
    - stderr is drained line-by-line into a bounded ring buffer
    - stdin writes go through a single-writer lock and return a
      WriteStatus tag instead of raising on a dead pipe
    - the exit future completes exactly once when the child exits

Design Rules:
    - The supervisor never auto-restarts; callers respawn on BROKEN_PIPE
    - Children run in their own session so stop() can signal the group
    - Raw pipes are never handed out
"""

import asyncio
import logging
import os
import signal
import time
from collections import deque
from enum import Enum
from typing import AsyncIterator, Deque, Dict, List, Optional, Sequence


logger = logging.getLogger(__name__)


class SpawnError(Exception):
    """Raised when the encoder binary cannot be started."""
    pass


class WriteStatus(str, Enum):
    """Outcome of a write to an encoder's stdin."""

    OK = "ok"
    BROKEN_PIPE = "broken_pipe"
    CANCELLED = "cancelled"


class EncoderHandle:
    """
    Single-ownership handle over one running encoder child.

    Attributes:
        label: Human readable stage name used in logs
        command: Binary that was spawned
        args: Argument vector passed to the binary
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        command: str,
        args: Sequence[str],
        label: str,
        stderr_capacity: int = 100,
    ) -> None:
        self.label = label
        self.command = command
        self.args = list(args)
        self.started_at: float = time.time()
        self.exited_at: Optional[float] = None

        self._process = process
        self._stderr: Deque[str] = deque(maxlen=stderr_capacity)
        self._write_lock = asyncio.Lock()
        self._stopping = False
        self._exit: asyncio.Future = asyncio.get_running_loop().create_future()
        self._tasks: List[asyncio.Task] = []

        if process.stderr is not None:
            self._tasks.append(asyncio.create_task(
                self._drain_stderr(), name=f"{label}_stderr"
            ))
        self._tasks.append(asyncio.create_task(
            self._watch_exit(), name=f"{label}_exit"
        ))

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode

    @property
    def running(self) -> bool:
        return not self._exit.done()

    @property
    def stopping(self) -> bool:
        return self._stopping

    def exit_task(self) -> asyncio.Future:
        """Future resolving to the exit code once the child has exited."""
        return asyncio.shield(self._exit)

    async def wait(self) -> int:
        return await asyncio.shield(self._exit)

    def recent_stderr(self) -> List[str]:
        """Last lines written to stderr, oldest first."""
        return list(self._stderr)

    async def write_frame(self, data: bytes) -> WriteStatus:
        """
        Write one buffer to the child's stdin.

        Returns:
            OK on success, BROKEN_PIPE when the child is gone,
            CANCELLED when a stop was requested for this handle.
        """
        if self._stopping:
            return WriteStatus.CANCELLED
        stdin = self._process.stdin
        if stdin is None or self._exit.done() or stdin.is_closing():
            return WriteStatus.BROKEN_PIPE

        async with self._write_lock:
            try:
                stdin.write(data)
                await stdin.drain()
            except (BrokenPipeError, ConnectionResetError):
                return WriteStatus.CANCELLED if self._stopping else WriteStatus.BROKEN_PIPE
        return WriteStatus.OK

    async def read_chunk(self, size: int) -> bytes:
        """Read up to size bytes of stdout. Empty bytes means end of stream."""
        stdout = self._process.stdout
        if stdout is None:
            return b""
        return await stdout.read(size)

    async def iter_stdout(self, chunk_size: int = 64 * 1024) -> AsyncIterator[bytes]:
        """Yield stdout chunks until the child closes its output."""
        while True:
            chunk = await self.read_chunk(chunk_size)
            if not chunk:
                return
            yield chunk

    async def close_stdin(self) -> None:
        stdin = self._process.stdin
        if stdin is None or stdin.is_closing():
            return
        try:
            stdin.close()
            await stdin.wait_closed()
        except (BrokenPipeError, ConnectionResetError):
            pass

    def mark_stopping(self) -> None:
        self._stopping = True

    def cancel_drains(self) -> None:
        for task in self._tasks:
            if not task.done():
                task.cancel()

    def signal_group(self, sig: int) -> None:
        """Send a signal to the child's process group."""
        if self._exit.done():
            return
        try:
            os.killpg(os.getpgid(self._process.pid), sig)
        except ProcessLookupError:
            pass
        except PermissionError:
            self._process.send_signal(sig)

    def to_dict(self) -> dict:
        return {
            "label": self.label,
            "pid": self.pid,
            "running": self.running,
            "returncode": self.returncode,
            "started_at": self.started_at,
            "exited_at": self.exited_at,
            "stderr_tail": self.recent_stderr()[-5:],
        }

    async def _drain_stderr(self) -> None:
        stream = self._process.stderr
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode("utf-8", errors="replace").rstrip()
            if text:
                self._stderr.append(text)

    async def _watch_exit(self) -> None:
        code = await self._process.wait()
        self.exited_at = time.time()
        if not self._exit.done():
            self._exit.set_result(code)
        logger.debug(f"[{self.label}] encoder pid={self.pid} exited with {code}")


class EncoderSupervisor:
    """
    Launches encoder children and enforces the stop grace period.

    Example:
        supervisor = EncoderSupervisor(binary="ffmpeg")
        handle = await supervisor.spawn(["-i", url, "-f", "mp3", "-"], label="audio")
        async for chunk in handle.iter_stdout(8192):
            ...
        await supervisor.stop(handle)
    """

    def __init__(
        self,
        binary: str = "ffmpeg",
        stderr_capacity: int = 100,
        kill_grace: float = 5.0,
    ) -> None:
        self.binary = binary
        self.stderr_capacity = stderr_capacity
        self.kill_grace = kill_grace
        self._handles: Dict[int, EncoderHandle] = {}

    async def spawn(
        self,
        args: Sequence[str],
        label: str = "encoder",
        stdin: bool = False,
        stdout: bool = True,
        command: Optional[str] = None,
    ) -> EncoderHandle:
        """
        Start a child process.

        Args:
            args: Argument vector (without the binary)
            label: Stage name for logs and diagnostics
            stdin: Attach a writable stdin pipe
            stdout: Attach a readable stdout pipe
            command: Override the binary for this spawn

        Raises:
            SpawnError: If the binary is missing or stdio cannot be attached
        """
        binary = command or self.binary
        try:
            process = await asyncio.create_subprocess_exec(
                binary,
                *args,
                stdin=asyncio.subprocess.PIPE if stdin else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE if stdout else asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
                start_new_session=True,
            )
        except FileNotFoundError as e:
            raise SpawnError(f"Encoder binary not found: {binary}") from e
        except OSError as e:
            raise SpawnError(f"Failed to start {binary}: {e}") from e

        handle = EncoderHandle(
            process,
            command=binary,
            args=args,
            label=label,
            stderr_capacity=self.stderr_capacity,
        )
        self._handles[handle.pid] = handle
        handle.exit_task().add_done_callback(lambda _: self._handles.pop(handle.pid, None))
        logger.info(f"[{label}] spawned {binary} pid={handle.pid}")
        return handle

    async def stop(self, handle: EncoderHandle, grace: Optional[float] = None) -> Optional[int]:
        """
        Terminate a child, killing its process group after the grace period.

        Returns:
            Exit code of the child
        """
        grace = self.kill_grace if grace is None else grace
        handle.mark_stopping()

        if handle.running:
            await handle.close_stdin()
            handle.signal_group(signal.SIGTERM)
            try:
                await asyncio.wait_for(handle.wait(), timeout=grace)
            except asyncio.TimeoutError:
                logger.warning(
                    f"[{handle.label}] pid={handle.pid} ignored SIGTERM for {grace:.1f}s, killing"
                )
                handle.signal_group(signal.SIGKILL)
                await handle.wait()

        handle.cancel_drains()
        return handle.returncode

    def active(self) -> List[EncoderHandle]:
        return list(self._handles.values())

    async def stop_all(self) -> None:
        handles = self.active()
        if handles:
            logger.info(f"Stopping {len(handles)} encoder(s)")
        await asyncio.gather(*(self.stop(h) for h in handles), return_exceptions=True)

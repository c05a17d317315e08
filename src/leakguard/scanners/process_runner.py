"""
Process Runner - Deadline-enforced external process execution.

Runs one child process per call with a discrete argument vector (never a
shell), streams its stdout line by line and its stderr in chunks, and makes
sure the child is gone before the call returns:

- natural exit: the deadline is cancelled and the result returned
- deadline expired: the child is SIGKILLed and ProcessTimeoutError raised
- output over budget: the child is SIGKILLed and ProcessOutputLimitError raised
- caller cancelled: the child is SIGKILLed and the cancellation propagates

Example:
    >>> runner = ProcessRunner(max_buffer_bytes=10 * 1024 * 1024)
    >>> result = await runner.run(["trufflehog", "--version"], timeout=10)
    >>> result.exit_code
    0
"""

import asyncio
import time
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

import structlog


DEFAULT_MAX_BUFFER_BYTES = 50 * 1024 * 1024
STDERR_CHUNK_SIZE = 64 * 1024


class ProcessRunnerError(Exception):
    """Base exception for process execution failures"""

    def __init__(self, executable: str, message: str):
        self.executable = executable
        super().__init__(message)


class ProcessSpawnError(ProcessRunnerError):
    """Raised when the child process could not be started"""

    def __init__(self, executable: str, reason: str, missing: bool = False):
        self.missing = missing
        super().__init__(executable, f"Failed to start {executable}: {reason}")


class ProcessTimeoutError(ProcessRunnerError):
    """Raised when the child was killed for exceeding its deadline"""

    def __init__(self, executable: str, timeout: float, pid: int):
        self.timeout = timeout
        self.pid = pid
        super().__init__(executable, f"{executable} killed after {timeout:.1f}s deadline")


class ProcessOutputLimitError(ProcessRunnerError):
    """Raised when stdout + stderr exceeded the buffer budget"""

    def __init__(self, executable: str, limit: int, pid: int):
        self.limit = limit
        self.pid = pid
        super().__init__(executable, f"{executable} output exceeded {limit} bytes")


@dataclass
class ProcessResult:
    """Captured outcome of a process that exited on its own"""
    exit_code: int
    stdout: str
    stderr: str
    duration_ms: int
    pid: int


class _OutputBudget:
    """Byte budget shared by the stdout and stderr readers of one process"""

    def __init__(self, limit: int):
        self.limit = limit
        self.used = 0
        self.exceeded = False

    def consume(self, size: int) -> bool:
        self.used += size
        if self.used > self.limit:
            self.exceeded = True
        return not self.exceeded


class ProcessRunner:
    """
    Spawns external tools with a wall-clock deadline and bounded output.

    The runner is stateless between calls, so one instance can be shared by
    every concurrent scan.
    """

    def __init__(self, max_buffer_bytes: int = DEFAULT_MAX_BUFFER_BYTES):
        """
        Initialize the runner.

        Args:
            max_buffer_bytes: Combined stdout + stderr budget per process
        """
        self.max_buffer_bytes = max_buffer_bytes
        self.logger = structlog.get_logger(__name__)

    async def run(
        self,
        argv: Sequence[str],
        timeout: float,
        on_stdout_line: Optional[Callable[[str], object]] = None,
    ) -> ProcessResult:
        """
        Run a process to completion or until its deadline.

        Args:
            argv: Executable followed by its arguments, one element each
            timeout: Wall-clock deadline in seconds
            on_stdout_line: Called with every stdout line as it arrives

        Returns:
            ProcessResult of the exited process (any exit code)

        Raises:
            ProcessSpawnError: If the executable could not be started
            ProcessTimeoutError: If the deadline expired
            ProcessOutputLimitError: If output exceeded ``max_buffer_bytes``
        """
        if not argv:
            raise ValueError("argv must contain at least the executable")
        argv = [str(arg) for arg in argv]
        executable = argv[0]

        start = time.monotonic()
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=self.max_buffer_bytes,
            )
        except FileNotFoundError as e:
            raise ProcessSpawnError(executable, str(e), missing=True) from e
        except OSError as e:
            raise ProcessSpawnError(executable, str(e)) from e

        self.logger.debug(
            "process_started",
            executable=executable,
            pid=process.pid,
            args=len(argv) - 1,
            timeout=timeout,
        )

        budget = _OutputBudget(self.max_buffer_bytes)
        stdout_lines: List[str] = []
        stderr_chunks: List[bytes] = []

        try:
            try:
                async with asyncio.timeout(timeout):
                    await asyncio.gather(
                        self._read_lines(process, budget, stdout_lines, on_stdout_line),
                        self._read_chunks(process, budget, stderr_chunks),
                    )
                    exit_code = await process.wait()
            except TimeoutError as e:
                self.logger.warning(
                    "process_timeout",
                    executable=executable,
                    pid=process.pid,
                    timeout=timeout,
                )
                raise ProcessTimeoutError(executable, timeout, process.pid) from e
        finally:
            await self._ensure_exited(process)

        if budget.exceeded:
            self.logger.error(
                "process_output_limit_exceeded",
                executable=executable,
                pid=process.pid,
                limit=self.max_buffer_bytes,
            )
            raise ProcessOutputLimitError(executable, self.max_buffer_bytes, process.pid)

        duration_ms = int((time.monotonic() - start) * 1000)
        self.logger.debug(
            "process_exited",
            executable=executable,
            pid=process.pid,
            exit_code=exit_code,
            duration_ms=duration_ms,
        )

        return ProcessResult(
            exit_code=exit_code,
            stdout="".join(stdout_lines),
            stderr=b"".join(stderr_chunks).decode("utf-8", errors="replace"),
            duration_ms=duration_ms,
            pid=process.pid,
        )

    async def _read_lines(
        self,
        process: asyncio.subprocess.Process,
        budget: _OutputBudget,
        sink: List[str],
        on_line: Optional[Callable[[str], object]],
    ) -> None:
        """Stream stdout line by line into ``sink`` and ``on_line``"""
        assert process.stdout is not None
        while True:
            try:
                raw = await process.stdout.readline()
            except ValueError:
                # A single line longer than the stream limit
                budget.exceeded = True
                self._kill(process)
                return
            if not raw:
                return
            if not budget.consume(len(raw)):
                self._kill(process)
                return

            line = raw.decode("utf-8", errors="replace")
            sink.append(line)
            if on_line is not None:
                on_line(line)

    async def _read_chunks(
        self,
        process: asyncio.subprocess.Process,
        budget: _OutputBudget,
        sink: List[bytes],
    ) -> None:
        """Drain stderr so the child never blocks on a full pipe"""
        assert process.stderr is not None
        while True:
            chunk = await process.stderr.read(STDERR_CHUNK_SIZE)
            if not chunk:
                return
            if not budget.consume(len(chunk)):
                self._kill(process)
                return
            sink.append(chunk)

    def _kill(self, process: asyncio.subprocess.Process) -> None:
        if process.returncode is None:
            try:
                process.kill()
            except ProcessLookupError:
                pass

    async def _ensure_exited(self, process: asyncio.subprocess.Process) -> None:
        """SIGKILL the child if it is still running and reap it"""
        if process.returncode is None:
            self._kill(process)
            self.logger.debug("process_killed", pid=process.pid)
        await process.wait()

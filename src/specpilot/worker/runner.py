"""Workers that execute prompts: a CLI subprocess runner and a scripted double."""

from __future__ import annotations

import asyncio
import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator, Iterable, Mapping, Protocol, Sequence, runtime_checkable

from ..errors import WorkerError, WorkerUnavailableError
from .utils import sanitize_environment, split_command

logger = logging.getLogger(__name__)

_CHUNK_SIZE = 4096
_KILL_GRACE = 5.0


@runtime_checkable
class Worker(Protocol):
    """The external assistant a prompt is dispatched to."""

    def is_available(self) -> bool:
        ...

    def submit(self, prompt: str) -> AsyncIterator[str]:
        ...


@dataclass(slots=True)
class WorkerExecutionResult:
    """Holds the outcome of one worker invocation."""

    args: tuple[str, ...]
    returncode: int | None
    stdout: str
    stderr: str

    @property
    def ok(self) -> bool:
        return self.returncode == 0

    def to_dict(self) -> dict[str, object]:
        return {
            "args": list(self.args),
            "returncode": self.returncode,
            "stdout": self.stdout,
            "stderr": self.stderr,
        }


class CliWorker:
    """Run a configured command per prompt and stream its stdout.

    The prompt is passed as the trailing argument (``prompt_mode="argument"``)
    or written to stdin (``prompt_mode="stdin"``). A nonzero exit raises
    WorkerError after all output has been yielded.
    """

    def __init__(
        self,
        command: str | Sequence[str],
        *,
        prompt_mode: str = "argument",
        cwd: Path | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        if prompt_mode not in {"argument", "stdin"}:
            raise ValueError("prompt_mode must be 'argument' or 'stdin'")
        self._argv = split_command(command)
        self._prompt_mode = prompt_mode
        self._cwd = Path(cwd) if cwd is not None else None
        self._env = dict(env or {})
        self._last_result: WorkerExecutionResult | None = None

    @property
    def argv(self) -> tuple[str, ...]:
        return tuple(self._argv)

    @property
    def last_result(self) -> WorkerExecutionResult | None:
        return self._last_result

    def _resolve_executable(self) -> str | None:
        executable = self._argv[0]
        candidate = Path(executable)
        if candidate.is_absolute() or "/" in executable:
            return str(candidate) if candidate.is_file() else None
        return shutil.which(executable)

    def is_available(self) -> bool:
        return self._resolve_executable() is not None

    async def _feed_stdin(self, process: asyncio.subprocess.Process, prompt: str) -> None:
        try:
            process.stdin.write(prompt.encode("utf-8"))
            await process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as exc:
            logger.debug("Worker closed stdin before reading the prompt", extra={"pid": process.pid, "error": str(exc)})
        finally:
            process.stdin.close()

    async def _reap(self, process: asyncio.subprocess.Process, stderr_task: asyncio.Task) -> None:
        """Kill the worker and drain its pipes so the transport can finish."""

        try:
            process.kill()
        except ProcessLookupError:
            pass
        while await process.stdout.read(_CHUNK_SIZE):
            pass
        await stderr_task
        await process.wait()

    async def submit(self, prompt: str) -> AsyncIterator[str]:
        executable = self._resolve_executable()
        if executable is None:
            raise WorkerUnavailableError(f"worker executable '{self._argv[0]}' not found")

        cmd = [executable, *self._argv[1:]]
        if self._prompt_mode == "argument":
            cmd.append(prompt)
        try:
            process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE if self._prompt_mode == "stdin" else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=str(self._cwd) if self._cwd is not None else None,
                env=sanitize_environment(self._env),
            )
        except (FileNotFoundError, PermissionError) as exc:
            raise WorkerUnavailableError(f"unable to start worker: {exc}") from exc

        logger.debug("Started worker process", extra={"pid": process.pid, "executable": executable})
        stderr_task = asyncio.create_task(process.stderr.read())
        stdin_task = (
            asyncio.create_task(self._feed_stdin(process, prompt)) if self._prompt_mode == "stdin" else None
        )
        stdout_parts: list[str] = []
        try:
            while True:
                chunk = await process.stdout.read(_CHUNK_SIZE)
                if not chunk:
                    break
                text = chunk.decode("utf-8", errors="replace")
                stdout_parts.append(text)
                yield text

            if stdin_task is not None:
                await stdin_task
            returncode = await process.wait()
        except BaseException:
            if stdin_task is not None:
                stdin_task.cancel()
            if process.returncode is None:
                try:
                    await asyncio.wait_for(self._reap(process, stderr_task), timeout=_KILL_GRACE)
                except asyncio.TimeoutError:
                    logger.warning("Worker process did not exit after kill", extra={"pid": process.pid})
            stderr_task.cancel()
            raise

        stderr = (await stderr_task).decode("utf-8", errors="replace")
        self._last_result = WorkerExecutionResult(
            args=tuple(cmd),
            returncode=returncode,
            stdout="".join(stdout_parts),
            stderr=stderr,
        )
        if returncode != 0:
            message = stderr.strip().splitlines()[-1] if stderr.strip() else "no error output"
            raise WorkerError(
                f"worker exited with status {returncode}: {message}",
                returncode=returncode,
                stderr=stderr,
            )


ScriptedResponse = Sequence[str] | str | BaseException


class FakeWorker:
    """Test double that replays scripted responses.

    Each submitted prompt consumes one response: a string or sequence of
    chunks is streamed back, an exception is raised. Once the script is
    exhausted every prompt yields ``default``.
    """

    def __init__(
        self,
        responses: Iterable[ScriptedResponse] | None = None,
        *,
        available: bool = True,
        chunk_delay: float = 0.0,
        default: str = "",
    ) -> None:
        self._responses = list(responses or [])
        self._available = available
        self._chunk_delay = chunk_delay
        self._default = default
        self._prompts: list[str] = []

    @property
    def prompts(self) -> list[str]:
        return self._prompts

    def set_available(self, available: bool) -> None:
        self._available = available

    def is_available(self) -> bool:
        return self._available

    async def submit(self, prompt: str) -> AsyncIterator[str]:
        if not self._available:
            raise WorkerUnavailableError("fake worker is unavailable")
        self._prompts.append(prompt)
        response = self._responses.pop(0) if self._responses else self._default
        if isinstance(response, BaseException):
            raise response
        chunks = [response] if isinstance(response, str) else list(response)
        for chunk in chunks:
            if self._chunk_delay:
                await asyncio.sleep(self._chunk_delay)
            yield chunk


__all__ = ["CliWorker", "FakeWorker", "Worker", "WorkerExecutionResult"]

from __future__ import annotations

import asyncio
import contextlib
import logging
import os
from abc import ABC, abstractmethod
from collections import deque
from typing import Callable, Deque, Dict, Mapping, Optional, Sequence

from .errors import SpawnError, TransportClosedError

logger = logging.getLogger(__name__)

StderrCallback = Callable[[str], None]


class Transport(ABC):
    """Byte pipe to the agent: a frame source plus a line sink."""

    @abstractmethod
    async def start(self) -> None:
        pass

    @property
    @abstractmethod
    def reader(self) -> asyncio.StreamReader:
        pass

    @abstractmethod
    async def write_line(self, line: str) -> None:
        pass

    @abstractmethod
    async def end_input(self) -> None:
        pass

    @property
    @abstractmethod
    def input_open(self) -> bool:
        pass

    @abstractmethod
    async def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        pass

    @abstractmethod
    async def terminate(self, grace: float = 2.0) -> Optional[int]:
        pass

    @abstractmethod
    async def close(self, timeout: Optional[float] = None) -> Optional[int]:
        pass

    @property
    def terminated(self) -> bool:
        """True once the process was stopped by force rather than exiting on its own."""
        return False

    @property
    def stderr_tail(self) -> str:
        return ""


class SubprocessTransport(Transport):
    """
    Runs the agent binary with stdin/stdout/stderr pipes.

    - The child inherits ``os.environ`` overlaid with ``env``; the caller's
      environment is never touched
    - stderr is drained in the background so the child never blocks on it
    - ``wait`` escalates to ``terminate`` when its timeout expires
    """

    def __init__(
        self,
        command: Sequence[str],
        env: Optional[Mapping[str, str]] = None,
        cwd: Optional[str] = None,
        stderr: Optional[StderrCallback] = None,
        stderr_lines: int = 50,
    ) -> None:
        if not command:
            raise ValueError("command must not be empty")
        self._command = list(command)
        self._env = dict(env or {})
        self._cwd = cwd
        self._stderr_callback = stderr
        self._stderr_tail: Deque[str] = deque(maxlen=stderr_lines)
        self._process: Optional[asyncio.subprocess.Process] = None
        self._stderr_task: Optional[asyncio.Task[None]] = None
        self._input_open = False
        self._terminated = False

    @property
    def command(self) -> Sequence[str]:
        return tuple(self._command)

    @property
    def pid(self) -> Optional[int]:
        return self._process.pid if self._process else None

    @property
    def returncode(self) -> Optional[int]:
        return self._process.returncode if self._process else None

    @property
    def terminated(self) -> bool:
        return self._terminated

    @property
    def stderr_tail(self) -> str:
        return "\n".join(self._stderr_tail)

    def _child_env(self) -> Dict[str, str]:
        env = os.environ.copy()
        env.update(self._env)
        return env

    async def start(self) -> None:
        if self._process is not None:
            raise RuntimeError("Transport already started")
        try:
            self._process = await asyncio.create_subprocess_exec(
                *self._command,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                cwd=self._cwd,
                env=self._child_env(),
            )
        except FileNotFoundError as err:
            if self._cwd and not os.path.isdir(self._cwd):
                raise SpawnError(f"Working directory does not exist: {self._cwd}") from err
            raise SpawnError(f"Agent binary not found: {self._command[0]}") from err
        except OSError as err:
            raise SpawnError(f"Failed to start agent {self._command[0]}: {err}") from err
        self._input_open = True
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        logger.debug(f"Started agent pid={self._process.pid}: {' '.join(self._command)}")

    @property
    def reader(self) -> asyncio.StreamReader:
        if self._process is None or self._process.stdout is None:
            raise RuntimeError("Transport not started")
        return self._process.stdout

    @property
    def input_open(self) -> bool:
        return self._input_open and self._process is not None and self._process.returncode is None

    async def write_line(self, line: str) -> None:
        if not self.input_open:
            raise TransportClosedError("Agent process is not accepting input")
        assert self._process is not None and self._process.stdin is not None
        self._process.stdin.write((line + "\n").encode("utf-8"))
        try:
            await self._process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as err:
            self._input_open = False
            raise TransportClosedError(f"Agent process closed its input: {err}") from err

    async def end_input(self) -> None:
        if not self._input_open or self._process is None or self._process.stdin is None:
            return
        self._input_open = False
        stdin = self._process.stdin
        stdin.close()
        with contextlib.suppress(BrokenPipeError, ConnectionResetError):
            await stdin.wait_closed()

    async def wait(self, timeout: Optional[float] = None) -> Optional[int]:
        if self._process is None:
            return None
        try:
            code = await asyncio.wait_for(self._process.wait(), timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Agent pid={self._process.pid} did not exit within {timeout}s; terminating")
            code = await self.terminate()
        await self._finish_stderr()
        return code

    async def terminate(self, grace: float = 2.0) -> Optional[int]:
        proc = self._process
        if proc is None:
            return None
        if proc.returncode is None:
            self._terminated = True
            with contextlib.suppress(ProcessLookupError):
                proc.terminate()
            try:
                await asyncio.wait_for(proc.wait(), grace)
            except asyncio.TimeoutError:
                with contextlib.suppress(ProcessLookupError):
                    proc.kill()
                await proc.wait()
        self._input_open = False
        return proc.returncode

    async def close(self, timeout: Optional[float] = None) -> Optional[int]:
        if self._process is None:
            return None
        await self.end_input()
        return await self.wait(timeout)

    async def _finish_stderr(self) -> None:
        # the child has exited; give the drain task a moment to reach EOF
        task = self._stderr_task
        if task is None or task.done():
            return
        await asyncio.wait({task}, timeout=1.0)
        if not task.done():
            task.cancel()

    async def _drain_stderr(self) -> None:
        assert self._process is not None and self._process.stderr is not None
        stream = self._process.stderr
        while True:
            try:
                raw = await stream.readline()
            except ValueError:
                # over-long line; readline already discarded it
                continue
            if not raw:
                return
            line = raw.decode("utf-8", errors="replace").rstrip()
            if not line:
                continue
            self._stderr_tail.append(line)
            if self._stderr_callback is not None:
                try:
                    self._stderr_callback(line)
                except Exception as e:  # noqa: BLE001
                    logger.warning(f"stderr callback failed: {e}")
            else:
                logger.debug(f"agent stderr: {line}")

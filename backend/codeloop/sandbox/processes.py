import asyncio
import logging
import os
import signal
from collections.abc import AsyncIterator

from codeloop.sandbox.base import ExecResult


logger = logging.getLogger("codeloop.sandbox.processes")

MAX_OUTPUT_BYTES = 10 * 1024 * 1024
TIMEOUT_EXIT_CODE = 124


def _decode(data: bytes | None) -> str:
    return (data or b"")[:MAX_OUTPUT_BYTES].decode("utf-8", errors="replace")


def signal_group(pgid: int, sig: signal.Signals) -> bool:
    """Signal a whole process group; returns False if it is already gone."""
    try:
        os.killpg(pgid, sig)
        return True
    except ProcessLookupError:
        return False
    except PermissionError:
        logger.warning("not permitted to signal process group %s", pgid)
        return False


async def run_shell(
    command: str,
    cwd: str,
    timeout: float = 600.0,
    env: dict[str, str] | None = None,
    registry: "ProcessManager | None" = None,
) -> ExecResult:
    """Run ``command`` through the shell in its own process group and collect output."""
    proc = await asyncio.create_subprocess_shell(
        command,
        cwd=cwd,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
        start_new_session=True,
        env={**os.environ, **env} if env else None,
    )
    if registry is not None:
        registry.register(proc)
    try:
        try:
            stdout, stderr = await asyncio.wait_for(proc.communicate(), timeout)
        except asyncio.TimeoutError:
            logger.warning("command timed out after %ss: %s", timeout, command)
            signal_group(proc.pid, signal.SIGKILL)
            stdout, stderr = await proc.communicate()
            return ExecResult(
                stdout=_decode(stdout),
                stderr=_decode(stderr) + f"\nCommand timed out after {timeout:g}s",
                exit_code=TIMEOUT_EXIT_CODE,
            )
    finally:
        if registry is not None:
            registry.unregister(proc)
    return ExecResult(
        stdout=_decode(stdout),
        stderr=_decode(stderr),
        exit_code=proc.returncode if proc.returncode is not None else -1,
    )


class ProcessManager:
    """Tracks the process groups spawned for the active project.

    ``stop`` sends SIGTERM to every group and arms a delayed SIGKILL. Starting
    another project cancels that pending escalation.
    """

    def __init__(self, kill_grace_seconds: float = 3.0, exec_timeout: float = 600.0):
        self.kill_grace_seconds = kill_grace_seconds
        self.exec_timeout = exec_timeout
        self.project_path: str | None = None
        self._groups: dict[int, asyncio.subprocess.Process] = {}
        self._escalation: asyncio.TimerHandle | None = None
        self._drains: set[asyncio.Task] = set()

    @property
    def groups(self) -> list[int]:
        return list(self._groups)

    @property
    def escalation_pending(self) -> bool:
        return self._escalation is not None

    def register(self, proc: asyncio.subprocess.Process) -> None:
        self._groups[proc.pid] = proc

    def unregister(self, proc: asyncio.subprocess.Process) -> None:
        self._groups.pop(proc.pid, None)

    def start(self, project_path: str) -> None:
        self._cancel_escalation()
        self.project_path = project_path
        logger.info("active project set to %s", project_path)

    def _cancel_escalation(self) -> None:
        if self._escalation is not None:
            self._escalation.cancel()
            self._escalation = None

    def _cwd(self, cwd: str | None) -> str:
        resolved = cwd or self.project_path
        if not resolved:
            raise RuntimeError("No active project")
        return resolved

    async def exec(self, command: str, cwd: str | None = None) -> ExecResult:
        return await run_shell(
            command, self._cwd(cwd), timeout=self.exec_timeout, registry=self
        )

    async def spawn(
        self, command: str, cwd: str | None = None, env: dict[str, str] | None = None
    ) -> asyncio.subprocess.Process:
        proc = await asyncio.create_subprocess_shell(
            command,
            cwd=self._cwd(cwd),
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            start_new_session=True,
            env={**os.environ, **env} if env else None,
        )
        self.register(proc)
        logger.info("spawned pgid=%s: %s", proc.pid, command)
        return proc

    async def stream(self, command: str, cwd: str | None = None) -> AsyncIterator[str]:
        """Yield combined output of ``command`` as it arrives.

        If the consumer stops iterating early the process keeps running, but its
        output is drained in the background instead of being piped anywhere.
        """
        proc = await self.spawn(command, cwd)
        finished = False
        try:
            if proc.stdout is None:
                raise RuntimeError(f"no output pipe for pid {proc.pid}")
            while True:
                chunk = await proc.stdout.read(4096)
                if not chunk:
                    break
                yield chunk.decode("utf-8", errors="replace")
            await proc.wait()
            finished = True
        finally:
            if finished:
                self.unregister(proc)
            else:
                task = asyncio.get_running_loop().create_task(self._drain(proc))
                self._drains.add(task)
                task.add_done_callback(self._drains.discard)

    async def _drain(self, proc: asyncio.subprocess.Process) -> None:
        if proc.stdout is not None:
            while await proc.stdout.read(65536):
                pass
        await proc.wait()
        self.unregister(proc)

    def stop(self) -> list[int]:
        pgids = list(self._groups)
        self._groups.clear()
        for pgid in pgids:
            signal_group(pgid, signal.SIGTERM)
        if pgids:
            self._cancel_escalation()
            loop = asyncio.get_running_loop()
            self._escalation = loop.call_later(
                self.kill_grace_seconds, self._escalate, pgids
            )
        logger.info("stopped %d process group(s)", len(pgids))
        return pgids

    def _escalate(self, pgids: list[int]) -> None:
        self._escalation = None
        for pgid in pgids:
            if signal_group(pgid, signal.SIGKILL):
                logger.info("escalated to SIGKILL for pgid=%s", pgid)

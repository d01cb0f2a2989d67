import asyncio
import logging
import os
from typing import Any

from vercel.sandbox import AsyncSandbox as Sandbox

from codeloop.sandbox.base import ExecResult
from codeloop.sandbox.disk import walk_project


logger = logging.getLogger("codeloop.sandbox.remote")

SYNC_CHUNK_SIZE = 64


def _read_payload(root: str) -> list[dict[str, Any]]:
    payload: list[dict[str, Any]] = []
    for rel in walk_project(root):
        try:
            with open(os.path.join(root, rel), "rb") as fh:
                payload.append({"path": rel, "content": fh.read()})
        except OSError:
            continue
    return payload


class VercelExecutor:
    """Command executor that mirrors the local project into a Vercel sandbox.

    Every ``exec`` re-syncs the project directory first so commands see the
    agent's latest writes. Output from stdout and stderr arrives interleaved
    in ``stdout``.
    """

    def __init__(self, runtime: str = "node22", timeout_ms: int = 600_000):
        self.runtime = runtime
        self.timeout_ms = timeout_ms
        self._sandbox: Sandbox | None = None

    async def _get_sandbox(self) -> Sandbox:
        if self._sandbox is None:
            self._sandbox = await Sandbox.create(
                timeout=self.timeout_ms, runtime=self.runtime
            )
            logger.info("created remote sandbox runtime=%s", self.runtime)
        return self._sandbox

    async def sync_project_files(self, sandbox: Sandbox, root: str) -> int:
        payload = await asyncio.to_thread(_read_payload, root)
        for i in range(0, len(payload), SYNC_CHUNK_SIZE):
            await sandbox.write_files(payload[i : i + SYNC_CHUNK_SIZE])
        return len(payload)

    async def exec(self, command: str, cwd: str) -> ExecResult:
        sandbox = await self._get_sandbox()
        synced = await self.sync_project_files(sandbox, cwd)
        logger.debug("synced %d files before: %s", synced, command)
        cmd = await sandbox.run_command_detached(
            "bash", ["-lc", f"cd {sandbox.sandbox.cwd} && {command}"]
        )
        output: list[str] = []
        async for line in cmd.logs():
            output.append(line.data)
        done = await cmd.wait()
        return ExecResult(stdout="".join(output), exit_code=done.exit_code)

    async def aclose(self) -> None:
        if self._sandbox is None:
            return
        try:
            await self._sandbox.stop()
        finally:
            await self._sandbox.client.aclose()
            self._sandbox = None

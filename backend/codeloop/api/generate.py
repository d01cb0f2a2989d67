import asyncio
import logging
import traceback
from collections.abc import AsyncGenerator

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse

from codeloop.agent.callbacks import EventCollector
from codeloop.agent.context import GenerationRequest
from codeloop.agent.loop import generate
from codeloop.errors import MissingCredentialsError, PathEscapeError
from codeloop.sandbox.base import FileSystem
from codeloop.sandbox.disk import CommandExecutor, DiskFileSystem
from codeloop.sandbox.remote import VercelExecutor
from codeloop.services import Services, get_services, resolve_project_path
from codeloop.sse import (
    SLEEP_INTERVAL_SECONDS,
    SSE_HEADERS,
    callback_event_sse,
    emit_event,
    make_task_id,
    sse_format,
)


logger = logging.getLogger("codeloop.api.generate")


router = APIRouter(prefix="/api", tags=["generate"])


class GenerateRequest(GenerationRequest):
    """Generation payload; ``project_path`` switches to an on-disk project."""

    project_path: str | None = None


def _open_sandbox(
    body: GenerateRequest, services: Services
) -> tuple[FileSystem | None, VercelExecutor | None]:
    if not body.project_path:
        return None, None
    settings = services.settings
    root = resolve_project_path(settings, body.project_path)
    remote = VercelExecutor() if settings.exec_backend == "vercel" else None
    executor: CommandExecutor = remote or services.processes
    fs = DiskFileSystem(root, executor=executor, exec_timeout=settings.exec_timeout)
    return fs, remote


@router.post("/generate")
async def generate_route(
    body: GenerateRequest,
    request: Request,
    services: Services = Depends(get_services),
):
    try:
        client = services.model_client_factory(
            body, services.settings, services.gateway_caches
        )
    except MissingCredentialsError as e:
        raise HTTPException(status_code=401, detail=str(e))
    try:
        fs, remote = _open_sandbox(body, services)
    except PathEscapeError as e:
        await client.aclose()
        raise HTTPException(status_code=400, detail=str(e))

    task_id = make_task_id()
    logger.info(
        "generate[%s] model=%s prompt_len=%d disk=%s",
        task_id,
        client.model,
        len(body.prompt),
        fs is not None,
    )
    collector = EventCollector(screenshots=True, questions=True)

    async def event_generator() -> AsyncGenerator[str, None]:
        run_task = asyncio.create_task(
            generate(
                body,
                client,
                services.settings,
                callbacks=collector,
                fs=fs,
                skills=services.skills,
                screenshots=services.screenshots,
                questions=services.questions,
            )
        )
        try:
            while not run_task.done():
                for ev in collector.drain():
                    yield callback_event_sse(task_id, ev)
                if await request.is_disconnected():
                    logger.info("generate[%s] client disconnected", task_id)
                    return
                await asyncio.sleep(SLEEP_INTERVAL_SECONDS)

            result = await run_task
            for ev in collector.drain():
                yield callback_event_sse(task_id, ev)
            if result.error:
                yield sse_format(emit_event(task_id, "error", error=result.error))
            yield sse_format(emit_event(task_id, "result", data=result.model_dump()))
        except Exception as e:
            logger.error("generate[%s] error: %s", task_id, str(e))
            tb = traceback.format_exc(limit=10)
            yield sse_format(emit_event(task_id, "run_log", data=f"Exception: {str(e)}\n{tb}"))
            yield sse_format(emit_event(task_id, "error", error=str(e)))
        finally:
            if not run_task.done():
                run_task.cancel()
            if remote is not None:
                await remote.aclose()

    return StreamingResponse(event_generator(), headers=SSE_HEADERS)

import logging
from collections.abc import AsyncGenerator
from typing import Any

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import StreamingResponse
from pydantic import BaseModel

from codeloop.errors import PathEscapeError
from codeloop.services import Services, get_services, resolve_project_path
from codeloop.sse import SSE_HEADERS, sse_format


logger = logging.getLogger("codeloop.api.native")


router = APIRouter(prefix="/api/native", tags=["native"])


class StartRequest(BaseModel):
    project_path: str
    command: str | None = None


class ExecRequest(BaseModel):
    command: str


def _require_project(services: Services) -> None:
    if not services.processes.project_path:
        raise HTTPException(status_code=409, detail="No active project")


@router.post("/start")
async def start_project(
    body: StartRequest, services: Services = Depends(get_services)
) -> dict[str, Any]:
    try:
        path = resolve_project_path(services.settings, body.project_path)
    except PathEscapeError as e:
        raise HTTPException(status_code=400, detail=str(e))
    processes = services.processes
    processes.start(path)
    pid = None
    if body.command:
        proc = await processes.spawn(body.command)
        pid = proc.pid
    return {"project_path": path, "pid": pid}


@router.post("/stop")
async def stop_project(services: Services = Depends(get_services)) -> dict[str, Any]:
    stopped = services.processes.stop()
    return {"stopped": stopped}


@router.post("/exec")
async def exec_command(
    body: ExecRequest, services: Services = Depends(get_services)
) -> dict[str, Any]:
    _require_project(services)
    result = await services.processes.exec(body.command)
    return result.model_dump()


@router.get("/exec-stream")
async def exec_stream(
    command: str, request: Request, services: Services = Depends(get_services)
):
    _require_project(services)

    async def event_generator() -> AsyncGenerator[str, None]:
        output = services.processes.stream(command)
        try:
            async for chunk in output:
                if await request.is_disconnected():
                    logger.info("exec-stream consumer disconnected: %s", command)
                    return
                yield sse_format({"output": chunk})
            yield sse_format({"done": True})
        except Exception as e:
            logger.error("exec-stream failed: %s", e)
            yield sse_format({"error": str(e)})
        finally:
            await output.aclose()

    return StreamingResponse(event_generator(), headers=SSE_HEADERS)

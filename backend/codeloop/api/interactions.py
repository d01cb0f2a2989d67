import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from codeloop.services import Services, get_services


logger = logging.getLogger("codeloop.api.interactions")


router = APIRouter(prefix="/api", tags=["interactions"])


class ScreenshotReply(BaseModel):
    image: str | None = None
    error: str | None = None


class QuestionReply(BaseModel):
    answers: dict[str, Any]


@router.post("/screenshot/{request_id}")
async def resolve_screenshot(
    request_id: str, reply: ScreenshotReply, services: Services = Depends(get_services)
) -> dict[str, Any]:
    broker = services.screenshots
    if reply.image:
        ok = broker.resolve(request_id, reply.image)
    else:
        ok = broker.reject(request_id, reply.error or "Screenshot capture failed")
    if not ok:
        raise HTTPException(status_code=404, detail="No pending screenshot request")
    return {"ok": True}


@router.post("/question/{request_id}")
async def answer_question(
    request_id: str, reply: QuestionReply, services: Services = Depends(get_services)
) -> dict[str, Any]:
    if not services.questions.resolve(request_id, reply.answers):
        raise HTTPException(status_code=404, detail="No pending question request")
    return {"ok": True}


@router.delete("/question/{request_id}")
async def cancel_question(
    request_id: str, services: Services = Depends(get_services)
) -> dict[str, Any]:
    if not services.questions.cancel(request_id):
        raise HTTPException(status_code=404, detail="No pending question request")
    logger.info("question %s cancelled by user", request_id)
    return {"ok": True}

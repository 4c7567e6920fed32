from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from app.database import get_db
from app.models.user import User
from app.schemas.message import CallActionRequest, CallInitiateRequest, CallRejectRequest
from app.services.auth import get_current_user
from app.services.calls import CallService
from app.websocket.manager import manager

router = APIRouter(prefix="/api/messages/calls", tags=["calls"])


def get_calls(
    db: AsyncSession = Depends(get_db),
    current_user: User = Depends(get_current_user),
) -> CallService:
    return CallService(db, current_user, manager)


@router.post("/initiate", status_code=201)
async def initiate_call(body: CallInitiateRequest, service: CallService = Depends(get_calls)):
    result = await service.initiate_call(body.recipient_id, body.call_type)
    label = "Audio" if body.call_type == "audio" else "Video"
    return {"success": True, "message": f"{label} call initiated", "data": result}


@router.post("/accept")
async def accept_call(body: CallActionRequest, service: CallService = Depends(get_calls)):
    return {"success": True, "message": "Call accepted", "data": await service.accept_call(body.call_id)}


@router.post("/reject")
async def reject_call(body: CallRejectRequest, service: CallService = Depends(get_calls)):
    result = await service.reject_call(body.call_id, body.reason)
    return {"success": True, "message": "Call rejected", "data": result}


@router.post("/end")
async def end_call(body: CallActionRequest, service: CallService = Depends(get_calls)):
    return {"success": True, "message": "Call ended", "data": await service.end_call(body.call_id)}


@router.get("/history")
async def call_history(
    page: int = Query(1, ge=1),
    limit: int | None = Query(None, ge=1),
    service: CallService = Depends(get_calls),
):
    result = await service.get_call_history(page, limit)
    return {"success": True, "message": "Call history fetched", "data": result}


@router.get("/active")
async def active_calls(service: CallService = Depends(get_calls)):
    return {"success": True, "message": "Active calls fetched", "data": service.get_active_calls()}

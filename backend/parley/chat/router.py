"""HTTP routes for rooms and messages.

Every route runs through :class:`EnvelopeRoute`: request ``data`` fields
are decrypted before validation and every response is sealed.

Endpoints:
    POST /rooms                          - Create a group, or get-or-create a direct chat
    GET  /rooms                          - Rooms of the caller, most recent first
    GET  /rooms/user/list                - Users the caller can start a chat with
    GET  /rooms/{room_id}                - One room with participants and history
    GET  /rooms/{room_id}/messages       - Paginated history (?limit=&offset=)
    POST /rooms/{room_id}/message        - Send a message
    POST /rooms/{room_id}/add-participants - Add users to a group
"""
import logging
from typing import List, Optional

from fastapi import APIRouter, Depends, Query

from parley.auth.dependencies import get_call_context, get_orchestrator
from parley.context import CallContext
from parley.directory.schemas import User
from parley.envelope import ApiResponse, EnvelopeRoute

from .schemas import (
    AddParticipantsRequest,
    Chat,
    CreateChatRequest,
    Message,
    PageResult,
    SendMessageRequest,
)
from .service import ChatOrchestrator

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/rooms", tags=["rooms"], route_class=EnvelopeRoute)


@router.post("", status_code=201)
async def create_room(
    body: CreateChatRequest,
    ctx: CallContext = Depends(get_call_context),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> Chat:
    return await orchestrator.create_chat(ctx, body)


@router.get("")
async def list_rooms(
    ctx: CallContext = Depends(get_call_context),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> List[Chat]:
    return await orchestrator.get_user_chats(ctx)


# Declared before /{room_id} so "user" is not captured as a room id.
@router.get("/user/list")
async def list_users(
    ctx: CallContext = Depends(get_call_context),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> List[User]:
    return await orchestrator.list_discoverable_users(ctx)


@router.get("/{room_id}")
async def get_room(
    room_id: str,
    ctx: CallContext = Depends(get_call_context),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> Chat:
    return await orchestrator.get_single_chat(ctx, room_id)


@router.get("/{room_id}/messages")
async def get_messages(
    room_id: str,
    limit: Optional[int] = Query(None, ge=1, description="Messages per page"),
    offset: int = Query(0, ge=0, description="Messages to skip, counted from the newest"),
    ctx: CallContext = Depends(get_call_context),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> PageResult:
    """Paginated history. ``currentPage`` counts from the oldest batch."""
    return await orchestrator.get_messages(ctx, room_id, limit, offset)


@router.post("/{room_id}/message", status_code=201)
async def send_message(
    room_id: str,
    body: SendMessageRequest,
    ctx: CallContext = Depends(get_call_context),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> Message:
    return await orchestrator.send_message(ctx, room_id, body.content, body.image, body.replyToId)


@router.post("/{room_id}/add-participants")
async def add_participants(
    room_id: str,
    body: AddParticipantsRequest,
    ctx: CallContext = Depends(get_call_context),
    orchestrator: ChatOrchestrator = Depends(get_orchestrator),
) -> ApiResponse:
    chat, added = await orchestrator.add_participants(ctx, room_id, body.userIds)
    message = f"Added {len(added)} participant(s)" if added else "No new participants"
    return ApiResponse(
        data=chat.model_dump(mode="json"),
        message=message,
        metadata={"addedUserIds": added},
    )

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy.ext.asyncio import AsyncSession
from typing import List
import logging
from lifestream.api.deps import get_connection_manager, get_current_identity, get_db
from lifestream.realtime import notifications
from lifestream.realtime.manager import ConnectionManager
from lifestream.schemas.common import RecordIdPath
from lifestream.schemas.chat import (
    ChatMessageOut,
    ClearConversationResponse,
    ConversationRequestDetails,
    ConversationResponse,
    ConversationSummary,
    MarkMessagesReadRequest,
    MarkMessagesReadResponse,
    SearchMessagesResponse,
    SendMessageRequest,
    UnreadCountResponse,
)
from lifestream.services.chat_service import chat_service, conversation_id
from lifestream.services.identity import Identity

logger = logging.getLogger(__name__)
router = APIRouter()


@router.get("/conversation/request/{request_id}", response_model=ConversationResponse, response_model_by_alias=True)
async def get_conversation(
    request_id: RecordIdPath,
    db: AsyncSession = Depends(get_db),
    current_user: Identity = Depends(get_current_identity),
):
    """Full conversation for a request the current user takes part in."""
    request, messages = await chat_service.get_conversation(db, current_user, request_id)
    return ConversationResponse(
        conversation_id=conversation_id(request.id),
        request_id=request.id,
        request_details=ConversationRequestDetails(
            patient_name=request.patient_name,
            hospital=request.hospital,
            blood_type=request.blood_type,
            urgency=request.urgency.value,
            request_status=request.status.value,
            requester_name=request.requester_name,
        ),
        messages=[ChatMessageOut.model_validate(m) for m in messages],
    )


@router.post("/messages", response_model=ChatMessageOut, status_code=status.HTTP_201_CREATED)
async def send_message(
    data: SendMessageRequest,
    db: AsyncSession = Depends(get_db),
    current_user: Identity = Depends(get_current_identity),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    """Send a message; joined sessions receive it as new-message."""
    message = await chat_service.send_message(db, current_user, data.request_id, data.text, data.conversation_id)
    await notifications.notify_new_message(manager, message)
    return message


@router.post("/messages/read", response_model=MarkMessagesReadResponse)
async def mark_messages_read(
    data: MarkMessagesReadRequest,
    db: AsyncSession = Depends(get_db),
    current_user: Identity = Depends(get_current_identity),
    manager: ConnectionManager = Depends(get_connection_manager),
):
    receipt = await chat_service.mark_messages_read(db, current_user, data.message_ids)
    await notifications.notify_messages_read(manager, receipt)
    return MarkMessagesReadResponse(marked_count=len(receipt.message_ids), message_ids=receipt.message_ids)


@router.get("/conversations", response_model=List[ConversationSummary])
async def list_conversations(
    db: AsyncSession = Depends(get_db),
    current_user: Identity = Depends(get_current_identity),
):
    rows = await chat_service.list_user_conversations(db, current_user)
    return [ConversationSummary(**row) for row in rows]


@router.get("/unread-count", response_model=UnreadCountResponse)
async def get_unread_count(
    db: AsyncSession = Depends(get_db),
    current_user: Identity = Depends(get_current_identity),
):
    return UnreadCountResponse(unread_count=await chat_service.unread_count(db, current_user))


@router.post("/conversation/{request_id}/clear", response_model=ClearConversationResponse)
async def clear_conversation(
    request_id: RecordIdPath,
    db: AsyncSession = Depends(get_db),
    current_user: Identity = Depends(get_current_identity),
):
    """Mark every message the current user received in the conversation as read."""
    marked = await chat_service.clear_conversation(db, current_user, request_id)
    return ClearConversationResponse(
        conversation_id=conversation_id(request_id),
        request_id=request_id,
        marked_count=marked,
    )


@router.get("/conversation/{request_id}/search", response_model=SearchMessagesResponse)
async def search_messages(
    request_id: RecordIdPath,
    q: str = Query(..., min_length=1, max_length=200),
    db: AsyncSession = Depends(get_db),
    current_user: Identity = Depends(get_current_identity),
):
    results = await chat_service.search_messages(db, current_user, request_id, q)
    return SearchMessagesResponse(
        query=q,
        results=[ChatMessageOut.model_validate(m) for m in results],
        total=len(results),
    )

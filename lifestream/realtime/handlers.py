"""Inbound socket event handlers."""
import logging
from datetime import datetime, timezone
from typing import Optional
from lifestream.core.config import settings
from lifestream.core.exceptions import AuthorizationError
from lifestream.realtime import notifications
from lifestream.realtime.dispatcher import EventDispatcher, SocketContext
from lifestream.realtime.rooms import authorize_user_room, conversation_room
from lifestream.schemas.events import (
    CreateRequestEvent,
    DonorResponseEvent,
    JoinConversationEvent,
    JoinUserEvent,
    LeaveConversationEvent,
    MarkMessagesReadEvent,
    MessageReadEvent,
    SendMessageEvent,
    TypingEvent,
    UpdateLocationEvent,
    UpdateRequestStatusEvent,
)
from lifestream.services.chat_service import chat_service, conversation_id, request_id_from_conversation
from lifestream.services.request_service import request_service
from lifestream.services.user_service import user_service

logger = logging.getLogger(__name__)

dispatcher = EventDispatcher()


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _check_self(ctx: SocketContext, claimed_user_id: Optional[int], action: str) -> None:
    # Payload user ids are informational; they may never name someone else
    if claimed_user_id is not None and claimed_user_id != ctx.identity.id:
        raise AuthorizationError(f"Unauthorized {action} attempt")


@dispatcher.on("join-user", JoinUserEvent)
async def join_user(ctx: SocketContext, payload: JoinUserEvent) -> None:
    room = authorize_user_room(ctx.identity.id, payload.user_id)
    ctx.manager.join(ctx.session, room)
    await ctx.emit("joined-room", {"room": room, "userId": ctx.identity.id})


@dispatcher.on("create-request", CreateRequestEvent, error_event="request-error")
async def create_request(ctx: SocketContext, payload: CreateRequestEvent) -> None:
    async with ctx.session_factory() as db:
        request = await request_service.create_request(db, ctx.identity, payload)
    await notifications.notify_new_request(ctx.manager, request, exclude=ctx.session)
    await ctx.emit("request-created", {
        "status": "success",
        "requestId": request.id,
        "message": "Blood request created successfully",
    })


@dispatcher.on("donor-response", DonorResponseEvent, error_event="response-error")
async def donor_response(ctx: SocketContext, payload: DonorResponseEvent) -> None:
    async with ctx.session_factory() as db:
        response, request = await request_service.respond_to_request(
            db, ctx.identity, payload.request_id, payload.message, payload.availability
        )
    await ctx.emit("response-sent", {
        "status": "success",
        "requestId": request.id,
        "responseId": response.id,
        "message": "Response sent to requester",
    })
    await notifications.notify_donor_available(ctx.manager, response, request)


@dispatcher.on("update-location", UpdateLocationEvent)
async def update_location(ctx: SocketContext, payload: UpdateLocationEvent) -> None:
    async with ctx.session_factory() as db:
        user = await user_service.update_location(db, ctx.identity, payload.latitude, payload.longitude)
    await notifications.notify_location(
        ctx.manager, ctx.identity.id, payload.latitude, payload.longitude,
        user.location_updated_at or _now(), exclude=ctx.session,
    )


@dispatcher.on("update-request-status", UpdateRequestStatusEvent, error_event="request-error")
async def update_request_status(ctx: SocketContext, payload: UpdateRequestStatusEvent) -> None:
    async with ctx.session_factory() as db:
        request = await request_service.update_status(db, ctx.identity, payload.request_id, payload.status)
        participants = None
        if settings.REQUEST_STATUS_BROADCAST_SCOPE == "participants":
            participants = await request_service.participant_ids(db, request)
    await notifications.notify_status_updated(ctx.manager, request, ctx.identity.id, participants)


@dispatcher.on("join-conversation", JoinConversationEvent, error_event="join-error")
async def join_conversation(ctx: SocketContext, payload: JoinConversationEvent) -> None:
    _check_self(ctx, payload.user_id, "join")
    async with ctx.session_factory() as db:
        request, history = await chat_service.join_conversation(
            db, ctx.identity, payload.request_id, payload.conversation_id
        )

    room = conversation_room(request.id)
    newly_joined = ctx.manager.join(ctx.session, room)
    logger.info(f"User {ctx.identity.id} joined {room}{'' if newly_joined else ' (again)'}")

    await ctx.emit("chat-history", [notifications.message_payload(m) for m in history])
    await ctx.emit("conversation-joined", {
        "conversationId": conversation_id(request.id),
        "requestId": request.id,
        "userId": ctx.identity.id,
    })
    if newly_joined:
        await ctx.manager.emit_to_room(room, "user-joined", {
            "userId": ctx.identity.id,
            "userName": ctx.identity.name,
            "timestamp": _now(),
        }, exclude=ctx.session)


@dispatcher.on("send-message", SendMessageEvent, error_event="message-error")
async def send_message(ctx: SocketContext, payload: SendMessageEvent) -> None:
    _check_self(ctx, payload.sender_id, "message send")
    async with ctx.session_factory() as db:
        message = await chat_service.send_message(
            db, ctx.identity, payload.request_id, payload.message, payload.conversation_id
        )
    await notifications.notify_new_message(ctx.manager, message)


@dispatcher.on("mark-messages-read", MarkMessagesReadEvent)
async def mark_messages_read(ctx: SocketContext, payload: MarkMessagesReadEvent) -> None:
    async with ctx.session_factory() as db:
        receipt = await chat_service.mark_messages_read(db, ctx.identity, payload.message_ids)
    await notifications.notify_messages_read(ctx.manager, receipt)


@dispatcher.on("message-read", MessageReadEvent)
async def message_read(ctx: SocketContext, payload: MessageReadEvent) -> None:
    async with ctx.session_factory() as db:
        receipt = await chat_service.mark_message_read(db, ctx.identity, payload.message_id)
    await notifications.notify_messages_read(ctx.manager, receipt, single=True)


async def _typing(ctx: SocketContext, payload: TypingEvent, is_typing: bool) -> None:
    _check_self(ctx, payload.user_id, "typing")
    room = conversation_room(request_id_from_conversation(payload.conversation_id))
    if not ctx.manager.is_member(ctx.session, room):
        raise AuthorizationError("Join the conversation before sending typing updates")
    await ctx.manager.emit_to_room(room, "user-typing", {
        "userId": ctx.identity.id,
        "userName": ctx.identity.name,
        "isTyping": is_typing,
    }, exclude=ctx.session)


@dispatcher.on("typing-start", TypingEvent)
async def typing_start(ctx: SocketContext, payload: TypingEvent) -> None:
    await _typing(ctx, payload, True)


@dispatcher.on("typing-stop", TypingEvent)
async def typing_stop(ctx: SocketContext, payload: TypingEvent) -> None:
    await _typing(ctx, payload, False)


@dispatcher.on("leave-conversation", LeaveConversationEvent)
async def leave_conversation(ctx: SocketContext, payload: LeaveConversationEvent) -> None:
    _check_self(ctx, payload.user_id, "leave")
    room = conversation_room(request_id_from_conversation(payload.conversation_id))
    if ctx.manager.leave(ctx.session, room):
        logger.info(f"User {ctx.identity.id} left {room}")
        await ctx.manager.emit_to_room(room, "user-left", {
            "userId": ctx.identity.id,
            "userName": ctx.identity.name,
            "timestamp": _now(),
        })

"""
Per-request chat: conversation identity, access, history and read state.

A conversation is never created explicitly. Its id is derived from the
request id and membership is derived from the store: the requester and any
user who has responded to the request (in any status) may take part.
"""
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence, Tuple
from sqlalchemy import and_, case, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from lifestream.core.config import settings
from lifestream.core.exceptions import (
    AccessDeniedError,
    EmptyMessageError,
    NotFoundError,
    ValidationError,
)
from lifestream.database import MAX_RECORD_ID, utcnow
from lifestream.models.blood_request import BloodRequest
from lifestream.models.chat_message import ChatMessage
from lifestream.models.donor_response import DonorResponse
from lifestream.services.identity import Identity
from lifestream.services.persistence import reading, unit_of_work

logger = logging.getLogger(__name__)

CONVERSATION_PREFIX = "request:"
CONVERSATION_ID_PATTERN = re.compile(r"request:([1-9][0-9]{0,9})")


def conversation_id(request_id: int) -> str:
    return f"{CONVERSATION_PREFIX}{request_id}"


def request_id_from_conversation(value: str) -> int:
    """Inverse of conversation_id; rejects anything it could not have produced."""
    match = CONVERSATION_ID_PATTERN.fullmatch(value or "")
    if match is None or int(match.group(1)) > MAX_RECORD_ID:
        raise ValidationError(f"Invalid conversation id '{value}'")
    return int(match.group(1))


@dataclass
class ReadReceipt:
    read_by: int
    read_at: datetime
    message_ids: List[int] = field(default_factory=list)
    # original sender id -> ids of their messages that were just read
    by_sender: Dict[int, List[int]] = field(default_factory=dict)


def _accessible_request_ids(user_id: int):
    owned = select(BloodRequest.id).where(BloodRequest.requester_id == user_id)
    responded = select(DonorResponse.request_id).where(DonorResponse.donor_id == user_id)
    return owned.union(responded)


class ChatService:
    """Conversation access, message persistence and read receipts."""

    @staticmethod
    async def has_access(db: AsyncSession, user_id: int, request: BloodRequest) -> bool:
        if request.requester_id == user_id:
            return True
        result = await db.execute(
            select(DonorResponse.id)
            .where(DonorResponse.request_id == request.id, DonorResponse.donor_id == user_id)
            .limit(1)
        )
        return result.scalar_one_or_none() is not None

    @staticmethod
    async def get_conversation_request(db: AsyncSession, user: Identity, request_id: int) -> BloodRequest:
        """Load the request behind a conversation, checking the caller may see it."""
        async with reading("check conversation access"):
            result = await db.execute(
                select(BloodRequest)
                .where(BloodRequest.id == request_id)
                .execution_options(populate_existing=True)
            )
            request = result.scalar_one_or_none()
            if request is None:
                raise NotFoundError("Blood request not found")
            allowed = await ChatService.has_access(db, user.id, request)
        if not allowed:
            logger.warning(f"User {user.id} denied access to conversation {conversation_id(request_id)}")
            raise AccessDeniedError()
        return request

    @staticmethod
    async def _recent_messages(db: AsyncSession, conv_id: str, limit: int) -> List[ChatMessage]:
        result = await db.execute(
            select(ChatMessage)
            .where(ChatMessage.conversation_id == conv_id)
            .order_by(ChatMessage.timestamp.desc(), ChatMessage.id.desc())
            .limit(limit)
        )
        messages = list(result.scalars().all())
        messages.reverse()
        return messages

    @staticmethod
    async def join_conversation(
        db: AsyncSession,
        user: Identity,
        request_id: int,
        supplied_conversation_id: Optional[str] = None,
    ) -> Tuple[BloodRequest, List[ChatMessage]]:
        """
        Check access and return the most recent history, oldest first.

        Access is checked on every call; nothing about an earlier join is
        trusted.
        """
        conv_id = conversation_id(request_id)
        if supplied_conversation_id is not None and supplied_conversation_id != conv_id:
            raise ValidationError("Conversation id does not match the request")

        request = await ChatService.get_conversation_request(db, user, request_id)
        async with reading("load chat history"):
            history = await ChatService._recent_messages(db, conv_id, settings.CHAT_HISTORY_LIMIT)
        return request, history

    @staticmethod
    async def send_message(
        db: AsyncSession,
        sender: Identity,
        request_id: int,
        text: Optional[str],
        supplied_conversation_id: Optional[str] = None,
    ) -> ChatMessage:
        """
        Persist a message from a conversation participant.

        The timestamp and sender type come from the server, never from the
        client.
        """
        conv_id = conversation_id(request_id)
        if supplied_conversation_id is not None and supplied_conversation_id != conv_id:
            raise ValidationError("Conversation id does not match the request")

        request = await ChatService.get_conversation_request(db, sender, request_id)

        body = (text or "").strip()
        if not body:
            raise EmptyMessageError()
        if len(body) > settings.MAX_MESSAGE_LENGTH:
            raise ValidationError(f"Message cannot exceed {settings.MAX_MESSAGE_LENGTH} characters")

        message = ChatMessage(
            conversation_id=conv_id,
            request_id=request_id,
            sender_id=sender.id,
            sender_type="requester" if request.requester_id == sender.id else "donor",
            text=body,
            timestamp=utcnow(),
            read_status=False,
        )
        async with unit_of_work(db, "save chat message"):
            db.add(message)
            await db.flush()
            message_id = message.id

        logger.info(f"Message {message_id} sent in {conv_id} by user {sender.id}")
        async with reading("load chat message"):
            result = await db.execute(
                select(ChatMessage)
                .where(ChatMessage.id == message_id)
                .execution_options(populate_existing=True)
            )
            return result.scalar_one()

    @staticmethod
    async def mark_messages_read(db: AsyncSession, reader: Identity, message_ids: Sequence[int]) -> ReadReceipt:
        """
        Mark messages as read by ``reader``.

        Only unread messages the reader can access and did not send are
        touched; anything else in ``message_ids`` is ignored.
        """
        read_at = utcnow()
        receipt = ReadReceipt(read_by=reader.id, read_at=read_at)
        ids = sorted({int(i) for i in message_ids})
        if not ids:
            return receipt

        async with unit_of_work(db, "mark messages read"):
            result = await db.execute(
                select(ChatMessage.id, ChatMessage.sender_id).where(
                    ChatMessage.id.in_(ids),
                    ChatMessage.sender_id != reader.id,
                    ChatMessage.read_status.is_(False),
                    ChatMessage.request_id.in_(_accessible_request_ids(reader.id)),
                )
            )
            rows = result.all()
            if rows:
                await db.execute(
                    update(ChatMessage)
                    .where(ChatMessage.id.in_([row.id for row in rows]))
                    .values(read_status=True, read_at=read_at)
                    .execution_options(synchronize_session=False)
                )

        for row in rows:
            receipt.message_ids.append(row.id)
            receipt.by_sender.setdefault(row.sender_id, []).append(row.id)
        if receipt.message_ids:
            logger.debug(f"User {reader.id} read {len(receipt.message_ids)} message(s)")
        return receipt

    @staticmethod
    async def mark_message_read(db: AsyncSession, reader: Identity, message_id: int) -> ReadReceipt:
        return await ChatService.mark_messages_read(db, reader, [message_id])

    @staticmethod
    async def get_conversation(db: AsyncSession, user: Identity, request_id: int) -> Tuple[BloodRequest, List[ChatMessage]]:
        """The whole conversation, oldest first, with the request it belongs to."""
        request = await ChatService.get_conversation_request(db, user, request_id)
        async with reading("load conversation"):
            result = await db.execute(
                select(ChatMessage)
                .where(ChatMessage.conversation_id == conversation_id(request_id))
                .order_by(ChatMessage.timestamp.asc(), ChatMessage.id.asc())
            )
            return request, list(result.scalars().all())

    @staticmethod
    async def list_user_conversations(db: AsyncSession, user: Identity) -> List[dict]:
        """One summary row per conversation the user takes part in, latest activity first."""
        unread = func.sum(
            case(
                (and_(ChatMessage.read_status.is_(False), ChatMessage.sender_id != user.id), 1),
                else_=0,
            )
        )
        stats = (
            select(
                ChatMessage.request_id.label("request_id"),
                func.count(ChatMessage.id).label("message_count"),
                unread.label("unread_count"),
                func.max(ChatMessage.timestamp).label("last_message_time"),
            )
            .where(ChatMessage.request_id.in_(_accessible_request_ids(user.id)))
            .group_by(ChatMessage.request_id)
            .subquery()
        )
        ranked = (
            select(
                ChatMessage.request_id.label("request_id"),
                ChatMessage.text.label("text"),
                func.row_number().over(
                    partition_by=ChatMessage.request_id,
                    order_by=(ChatMessage.timestamp.desc(), ChatMessage.id.desc()),
                ).label("position"),
            )
            .subquery()
        )

        async with reading("list conversations"):
            result = await db.execute(
                select(stats, ranked.c.text)
                .join(ranked, and_(ranked.c.request_id == stats.c.request_id, ranked.c.position == 1))
                .order_by(stats.c.last_message_time.desc())
            )
            rows = result.all()
            requests = {}
            if rows:
                loaded = await db.execute(
                    select(BloodRequest).where(BloodRequest.id.in_([row.request_id for row in rows]))
                )
                requests = {r.id: r for r in loaded.scalars().all()}

        conversations = []
        for row in rows:
            request = requests.get(row.request_id)
            conversations.append({
                "conversation_id": conversation_id(row.request_id),
                "request_id": row.request_id,
                "patient_name": request.patient_name if request else None,
                "hospital": request.hospital if request else None,
                "blood_type": request.blood_type if request else None,
                "urgency": request.urgency.value if request else None,
                "request_status": request.status.value if request else None,
                "requester_name": request.requester_name if request else None,
                "message_count": row.message_count,
                "unread_count": int(row.unread_count or 0),
                "last_message_time": row.last_message_time,
                "last_message_text": row.text,
            })
        return conversations

    @staticmethod
    async def unread_count(db: AsyncSession, user: Identity) -> int:
        async with reading("count unread messages"):
            result = await db.execute(
                select(func.count(ChatMessage.id)).where(
                    ChatMessage.read_status.is_(False),
                    ChatMessage.sender_id != user.id,
                    ChatMessage.request_id.in_(_accessible_request_ids(user.id)),
                )
            )
            return result.scalar_one()

    @staticmethod
    async def clear_conversation(db: AsyncSession, user: Identity, request_id: int) -> int:
        """Mark every message the user received in the conversation as read."""
        await ChatService.get_conversation_request(db, user, request_id)
        async with unit_of_work(db, "clear conversation"):
            result = await db.execute(
                update(ChatMessage)
                .where(
                    ChatMessage.conversation_id == conversation_id(request_id),
                    ChatMessage.sender_id != user.id,
                    ChatMessage.read_status.is_(False),
                )
                .values(read_status=True, read_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            marked = result.rowcount
        logger.info(f"User {user.id} cleared {marked} unread message(s) in {conversation_id(request_id)}")
        return marked

    @staticmethod
    async def search_messages(db: AsyncSession, user: Identity, request_id: int, query: str) -> List[ChatMessage]:
        """Case-insensitive substring search, newest first."""
        term = (query or "").strip()
        if not term:
            raise ValidationError("Search query is required")
        await ChatService.get_conversation_request(db, user, request_id)
        async with reading("search messages"):
            result = await db.execute(
                select(ChatMessage)
                .where(
                    ChatMessage.conversation_id == conversation_id(request_id),
                    func.lower(ChatMessage.text).contains(term.lower(), autoescape=True),
                )
                .order_by(ChatMessage.timestamp.desc(), ChatMessage.id.desc())
            )
            return list(result.scalars().all())


chat_service = ChatService()

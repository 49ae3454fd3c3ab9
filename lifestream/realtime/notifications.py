"""
Outbound event payloads and their routing.

Both the socket handlers and the HTTP endpoints call these after a
successful commit, so a client sees the same events whichever surface
triggered the change.
"""
import logging
from datetime import datetime
from typing import Iterable, Optional
from lifestream.core.config import settings
from lifestream.models.blood_request import BloodRequest
from lifestream.models.chat_message import ChatMessage
from lifestream.models.donor_response import DonorResponse
from lifestream.realtime.manager import ClientSession, ConnectionManager
from lifestream.realtime.rooms import conversation_room
from lifestream.schemas.blood_request import BloodRequestResponse
from lifestream.schemas.chat import ChatMessageOut
from lifestream.services.chat_service import ReadReceipt
from lifestream.services.request_service import SelectionOutcome

logger = logging.getLogger(__name__)


def request_payload(request: BloodRequest) -> dict:
    return BloodRequestResponse.model_validate(request).model_dump(mode="json")


def message_payload(message: ChatMessage) -> dict:
    return ChatMessageOut.model_validate(message).model_dump(mode="json", by_alias=True)


async def notify_new_request(
    manager: ConnectionManager,
    request: BloodRequest,
    exclude: Optional[ClientSession] = None,
) -> None:
    delivered = await manager.broadcast("new-blood-request", request_payload(request), exclude=exclude)
    logger.info(f"new-blood-request {request.id} sent to {delivered} session(s)")


async def notify_donor_available(manager: ConnectionManager, response: DonorResponse, request: BloodRequest) -> None:
    # Dropped if the requester has no live session
    await manager.emit_to_user(request.requester_id, "donor-available", {
        "requestId": request.id,
        "donorId": response.donor_id,
        "donorName": response.donor_name,
        "message": response.message,
        "responseTime": response.created_at,
        "responseId": response.id,
    })


async def notify_status_updated(
    manager: ConnectionManager,
    request: BloodRequest,
    updated_by: int,
    participant_ids: Optional[Iterable[int]] = None,
) -> None:
    payload = {
        "requestId": request.id,
        "status": request.status.value,
        "updatedBy": updated_by,
    }
    if settings.REQUEST_STATUS_BROADCAST_SCOPE == "participants" and participant_ids is not None:
        for user_id in sorted(set(participant_ids)):
            await manager.emit_to_user(user_id, "request-status-updated", payload)
        return
    await manager.broadcast("request-status-updated", payload)


async def notify_donor_selected(
    manager: ConnectionManager,
    outcome: SelectionOutcome,
    updated_by: int,
    participant_ids: Optional[Iterable[int]] = None,
) -> None:
    await notify_status_updated(manager, outcome.request, updated_by, participant_ids)
    await manager.emit_to_user(outcome.accepted.donor_id, "donor-selected", {
        "requestId": outcome.request.id,
        "donationId": outcome.donation.id,
    })
    for donor_id in outcome.rejected_donor_ids:
        await manager.emit_to_user(donor_id, "response-rejected", {"requestId": outcome.request.id})


async def notify_new_message(manager: ConnectionManager, message: ChatMessage) -> None:
    # The sender is a member too; its UI renders from this event
    await manager.emit_to_room(conversation_room(message.request_id), "new-message", message_payload(message))


async def notify_messages_read(manager: ConnectionManager, receipt: ReadReceipt, single: bool = False) -> None:
    """Tell each original sender which of their messages were read."""
    for sender_id, message_ids in receipt.by_sender.items():
        if single:
            for message_id in message_ids:
                await manager.emit_to_user(sender_id, "message-read-receipt", {
                    "messageId": message_id,
                    "readBy": receipt.read_by,
                    "readAt": receipt.read_at,
                })
        else:
            await manager.emit_to_user(sender_id, "messages-read", {
                "messageIds": message_ids,
                "readBy": receipt.read_by,
                "readAt": receipt.read_at,
            })


async def notify_location(
    manager: ConnectionManager,
    user_id: int,
    latitude: float,
    longitude: float,
    timestamp: datetime,
    exclude: Optional[ClientSession] = None,
) -> None:
    await manager.broadcast("location-updated", {
        "userId": user_id,
        "location": {"latitude": latitude, "longitude": longitude},
        "timestamp": timestamp,
    }, exclude=exclude)

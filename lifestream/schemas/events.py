"""
Inbound socket event payloads.

One model per event name. Clients send camelCase keys; unknown keys are
ignored so older clients keep working, but every required field is checked
before a handler runs.
"""
from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import List, Optional
from datetime import datetime
from lifestream.schemas.blood_request import BloodRequestCreate, Location
from lifestream.schemas.common import RecordId


class EventPayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")


class JoinUserEvent(EventPayload):
    user_id: RecordId


class CreateRequestEvent(BloodRequestCreate):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="ignore")

    # Socket clients always share where the blood is needed
    location: Location


class DonorResponseEvent(EventPayload):
    request_id: RecordId
    message: Optional[str] = None
    availability: Optional[datetime] = None


class UpdateLocationEvent(Location):
    model_config = ConfigDict(extra="ignore")


class UpdateRequestStatusEvent(EventPayload):
    request_id: RecordId
    status: str


class JoinConversationEvent(EventPayload):
    request_id: RecordId
    conversation_id: Optional[str] = None
    user_id: Optional[RecordId] = None


class SendMessageEvent(EventPayload):
    request_id: RecordId
    message: str
    conversation_id: Optional[str] = None
    # Accepted for compatibility; the server derives sender and time itself
    sender_id: Optional[RecordId] = None
    sender_type: Optional[str] = None
    timestamp: Optional[datetime] = None


class MarkMessagesReadEvent(EventPayload):
    message_ids: List[RecordId] = Field(min_length=1)


class TypingEvent(EventPayload):
    conversation_id: str
    user_id: Optional[RecordId] = None


class MessageReadEvent(EventPayload):
    message_id: RecordId
    conversation_id: Optional[str] = None


class LeaveConversationEvent(EventPayload):
    conversation_id: str
    user_id: Optional[RecordId] = None

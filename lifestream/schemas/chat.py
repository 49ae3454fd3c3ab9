from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel
from typing import List, Optional
from datetime import datetime
from lifestream.schemas.common import RecordId


class ChatMessageOut(BaseModel):
    id: int
    conversation_id: str
    request_id: int
    text: str
    sender_id: int
    sender_name: Optional[str] = None
    sender_type: str
    timestamp: datetime
    read_status: bool
    read_at: Optional[datetime] = None

    class Config:
        from_attributes = True
        alias_generator = to_camel
        populate_by_name = True


class SendMessageRequest(BaseModel):
    request_id: RecordId
    text: str
    conversation_id: Optional[str] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class MarkMessagesReadRequest(BaseModel):
    message_ids: List[RecordId] = Field(min_length=1)

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class MarkMessagesReadResponse(BaseModel):
    marked_count: int
    message_ids: List[int]

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class ConversationRequestDetails(BaseModel):
    patient_name: str
    hospital: Optional[str] = None
    blood_type: str
    urgency: str
    request_status: str
    requester_name: Optional[str] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class ConversationResponse(BaseModel):
    conversation_id: str
    request_id: int
    request_details: ConversationRequestDetails
    messages: List[ChatMessageOut]

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class ConversationSummary(BaseModel):
    conversation_id: str
    request_id: int
    patient_name: Optional[str] = None
    hospital: Optional[str] = None
    blood_type: Optional[str] = None
    urgency: Optional[str] = None
    request_status: Optional[str] = None
    requester_name: Optional[str] = None
    message_count: int = 0
    unread_count: int = 0
    last_message_time: Optional[datetime] = None
    last_message_text: Optional[str] = None

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class UnreadCountResponse(BaseModel):
    unread_count: int

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class ClearConversationResponse(BaseModel):
    conversation_id: str
    request_id: int
    marked_count: int

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class SearchMessagesResponse(BaseModel):
    query: str
    results: List[ChatMessageOut]
    total: int

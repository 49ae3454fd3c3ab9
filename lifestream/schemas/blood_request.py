from pydantic import BaseModel, Field
from pydantic.alias_generators import to_camel
from typing import List, Optional
from datetime import datetime
from lifestream.models.blood_request import RequestStatus, Urgency
from lifestream.models.donor_response import ResponseStatus
from lifestream.models.donation import DonationStatus
from lifestream.schemas.common import RecordId


class Location(BaseModel):
    latitude: float = Field(ge=-90, le=90)
    longitude: float = Field(ge=-180, le=180)


class BloodRequestCreate(BaseModel):
    # Presence and positivity are checked by the request service so that
    # socket and HTTP callers get the same error.
    patient_name: Optional[str] = None
    blood_type: Optional[str] = None
    units_needed: Optional[int] = None
    hospital: Optional[str] = None
    urgency: Urgency = Urgency.MEDIUM
    location: Optional[Location] = None
    additional_notes: Optional[str] = None
    is_emergency: bool = False

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class RequestStatusUpdate(BaseModel):
    status: str


class DonorResponseCreate(BaseModel):
    message: Optional[str] = None
    availability: Optional[datetime] = None


class SelectDonorRequest(BaseModel):
    donor_id: RecordId

    class Config:
        alias_generator = to_camel
        populate_by_name = True


class BloodRequestResponse(BaseModel):
    id: int
    requester_id: int
    requester_name: Optional[str] = None
    patient_name: str
    blood_type: str
    units_needed: int
    hospital: Optional[str] = None
    urgency: Urgency
    latitude: Optional[float] = None
    longitude: Optional[float] = None
    additional_notes: Optional[str] = None
    status: RequestStatus
    is_emergency: bool = False
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RequestHistoryItem(BloodRequestResponse):
    response_count: int = 0


class DonorResponseOut(BaseModel):
    id: int
    request_id: int
    donor_id: int
    donor_name: Optional[str] = None
    message: Optional[str] = None
    availability: Optional[datetime] = None
    status: ResponseStatus
    created_at: datetime
    updated_at: Optional[datetime] = None

    class Config:
        from_attributes = True


class RequestDetailsResponse(BaseModel):
    request: BloodRequestResponse
    responses: List[DonorResponseOut]


class DonationResponse(BaseModel):
    id: int
    request_id: int
    donor_id: int
    status: DonationStatus
    units_donated: Optional[int] = None
    donation_date: Optional[datetime] = None
    created_at: datetime
    patient_name: Optional[str] = None
    hospital: Optional[str] = None
    blood_type: Optional[str] = None

    class Config:
        from_attributes = True


class SelectDonorResponse(BaseModel):
    status: str = "success"
    message: str = "Donor selected successfully"
    request: BloodRequestResponse
    donation: DonationResponse
    rejected_donor_ids: List[int]


class ExistingResponseCheck(BaseModel):
    has_responded: bool
    response: Optional[DonorResponseOut] = None

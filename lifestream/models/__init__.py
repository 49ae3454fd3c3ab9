# Database models
from .user import User, UserRole, DONOR_ROLES
from .blood_request import BloodRequest, RequestStatus, Urgency, URGENCY_RANK, TERMINAL_STATUSES
from .donor_response import DonorResponse, ResponseStatus
from .donation import Donation, DonationStatus
from .chat_message import ChatMessage

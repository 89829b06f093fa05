import datetime
from dataclasses import asdict, dataclass, field
from enum import Enum
from typing import List, Optional

BLOOD_TYPES = ['A+', 'A-', 'B+', 'B-', 'AB+', 'AB-', 'O+', 'O-']

# Recipient blood type -> donor blood types it can receive
COMPATIBLE_DONORS = {
    'O-': ['O-'],
    'O+': ['O-', 'O+'],
    'A-': ['O-', 'A-'],
    'A+': ['O-', 'O+', 'A-', 'A+'],
    'B-': ['O-', 'B-'],
    'B+': ['O-', 'O+', 'B-', 'B+'],
    'AB-': ['O-', 'A-', 'B-', 'AB-'],
    'AB+': ['O-', 'O+', 'A-', 'A+', 'B-', 'B+', 'AB-', 'AB+'],
}

USERS = 'users'
BLOOD_REQUESTS = 'bloodRequests'
OFFERS = 'donationMatches'
DONATIONS = 'donations'
NOTIFICATIONS = 'notifications'


class RequestStatus(str, Enum):
    PENDING = 'Pending'
    FULFILLED = 'Fulfilled'
    CANCELLED = 'Cancelled'


class OfferStatus(str, Enum):
    PENDING = 'pending'
    ACCEPTED = 'accepted'
    REJECTED = 'rejected'


class NotificationType(str, Enum):
    REQUEST_MATCH = 'request_match'
    OFFER_ACCEPTED = 'offer_accepted'
    OFFER_REJECTED = 'offer_rejected'


class Urgency(str, Enum):
    LOW = 'Low'
    MEDIUM = 'Medium'
    HIGH = 'High'


class Availability(str, Enum):
    AVAILABLE = 'Available'
    UNAVAILABLE = 'Unavailable'


class Role(str, Enum):
    DONOR = 'donor'
    PATIENT = 'patient'
    ADMIN = 'admin'


class Decision(str, Enum):
    ACCEPT = 'accept'
    REJECT = 'reject'


NOTIFICATION_CHANNELS = ('email', 'sms')


def now_iso():
    return datetime.datetime.now(datetime.timezone.utc).isoformat(timespec='microseconds')


def compatible_donor_types(blood_type):
    """Donor blood types a recipient of `blood_type` can receive"""
    return COMPATIBLE_DONORS.get(blood_type, [])


def _id_of(doc):
    return str(doc['_id']) if '_id' in doc else doc.get('id')


@dataclass(frozen=True)
class Caller:
    """Identity of the user performing an operation, as vouched for by the identity provider."""
    user_id: str
    email: Optional[str] = None
    role: Optional[str] = None


@dataclass
class Person:
    id: str
    first_name: str
    last_name: str
    email: str
    role: str
    blood_type: str
    location: str
    availability: str = Availability.AVAILABLE.value
    phone_number: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    geocell_key: Optional[str] = None
    last_donation_date: Optional[str] = None
    is_donor: bool = True
    notification_channels: List[str] = field(default_factory=lambda: ['email'])

    @property
    def display_name(self):
        name = f"{self.first_name} {self.last_name}".strip()
        return name or 'Anonymous Donor'

    @classmethod
    def from_doc(cls, doc):
        return cls(
            id=_id_of(doc),
            first_name=doc.get('firstName', ''),
            last_name=doc.get('lastName', ''),
            email=doc.get('email', ''),
            role=doc.get('role', Role.DONOR.value),
            blood_type=doc.get('bloodType', ''),
            location=doc.get('location', ''),
            availability=doc.get('availability', Availability.AVAILABLE.value),
            phone_number=doc.get('phoneNumber'),
            lat=doc.get('lat'),
            lng=doc.get('lng'),
            geocell_key=doc.get('geohash'),
            last_donation_date=doc.get('lastDonationDate'),
            is_donor=doc.get('isDonor', True),
            notification_channels=list(doc.get('notificationChannels', ['email'])),
        )


@dataclass
class BloodRequest:
    id: Optional[str]
    user_id: str
    patient_name: str
    blood_type: str
    location: str
    urgency: str
    status: str
    created_at: str
    contact_person: str = ''
    contact_phone: str = ''
    contact_email: str = ''
    notes: Optional[str] = None
    lat: Optional[float] = None
    lng: Optional[float] = None
    geocell_key: Optional[str] = None
    accepted_offer_id: Optional[str] = None

    @property
    def is_pending(self):
        return self.status == RequestStatus.PENDING.value

    @classmethod
    def from_doc(cls, doc):
        return cls(
            id=_id_of(doc),
            user_id=doc.get('userId'),
            patient_name=doc.get('patientName', ''),
            blood_type=doc.get('bloodType', ''),
            location=doc.get('location', ''),
            urgency=doc.get('urgency', Urgency.MEDIUM.value),
            status=doc.get('status', RequestStatus.PENDING.value),
            created_at=doc.get('createdAt'),
            contact_person=doc.get('contactPerson', ''),
            contact_phone=doc.get('contactPhone', ''),
            contact_email=doc.get('contactEmail', ''),
            notes=doc.get('notes'),
            lat=doc.get('lat'),
            lng=doc.get('lng'),
            geocell_key=doc.get('geohash'),
            accepted_offer_id=doc.get('acceptedOfferId'),
        )

    def to_doc(self):
        doc = {
            "userId": self.user_id,
            "patientName": self.patient_name,
            "bloodType": self.blood_type,
            "location": self.location,
            "urgency": self.urgency,
            "status": self.status,
            "createdAt": self.created_at,
            "contactPerson": self.contact_person,
            "contactPhone": self.contact_phone,
            "contactEmail": self.contact_email,
        }
        if self.notes:
            doc["notes"] = self.notes
        if self.lat is not None and self.lng is not None:
            doc["lat"] = self.lat
            doc["lng"] = self.lng
            doc["geohash"] = self.geocell_key
        return doc


@dataclass
class Offer:
    id: Optional[str]
    request_id: str
    request_user_id: str
    donor_id: str
    donor_name: str
    donor_blood_type: str
    donor_location: str
    donor_email: str
    donor_phone_number: str
    match_date: str
    status: str = OfferStatus.PENDING.value
    responded_at: Optional[str] = None

    @classmethod
    def snapshot(cls, request, donor, match_date):
        """New pending offer carrying the donor's contact details as they are right now"""
        return cls(
            id=None,
            request_id=request.id,
            request_user_id=request.user_id,
            donor_id=donor.id,
            donor_name=donor.display_name,
            donor_blood_type=donor.blood_type,
            donor_location=donor.location,
            donor_email=donor.email,
            donor_phone_number=donor.phone_number or '',
            match_date=match_date,
        )

    @classmethod
    def from_doc(cls, doc):
        return cls(
            id=_id_of(doc),
            request_id=doc.get('requestId'),
            request_user_id=doc.get('requestUserId'),
            donor_id=doc.get('donorId'),
            donor_name=doc.get('donorName', ''),
            donor_blood_type=doc.get('donorBloodType', ''),
            donor_location=doc.get('donorLocation', ''),
            donor_email=doc.get('donorEmail', ''),
            donor_phone_number=doc.get('donorPhoneNumber', ''),
            match_date=doc.get('matchDate'),
            status=doc.get('status', OfferStatus.PENDING.value),
            responded_at=doc.get('respondedAt'),
        )

    def to_doc(self):
        return {
            "requestId": self.request_id,
            "requestUserId": self.request_user_id,
            "donorId": self.donor_id,
            "donorName": self.donor_name,
            "donorBloodType": self.donor_blood_type,
            "donorLocation": self.donor_location,
            "donorEmail": self.donor_email,
            "donorPhoneNumber": self.donor_phone_number,
            "matchDate": self.match_date,
            "status": self.status,
        }


@dataclass(frozen=True)
class Donation:
    id: Optional[str]
    donor_id: str
    request_id: str
    donor_name: str
    blood_type: str
    location: str
    donation_date: str

    @classmethod
    def from_doc(cls, doc):
        return cls(
            id=_id_of(doc),
            donor_id=doc.get('donorId'),
            request_id=doc.get('requestId'),
            donor_name=doc.get('donorName', ''),
            blood_type=doc.get('bloodType', ''),
            location=doc.get('location', ''),
            donation_date=doc.get('donationDate'),
        )

    def to_doc(self):
        return {
            "donorId": self.donor_id,
            "requestId": self.request_id,
            "donorName": self.donor_name,
            "bloodType": self.blood_type,
            "location": self.location,
            "donationDate": self.donation_date,
        }


@dataclass
class Notification:
    id: Optional[str]
    user_id: str
    message: str
    type: str
    related_id: str
    is_read: bool
    created_at: str

    @classmethod
    def from_doc(cls, doc):
        return cls(
            id=_id_of(doc),
            user_id=doc.get('userId'),
            message=doc.get('message', ''),
            type=doc.get('type'),
            related_id=doc.get('relatedId'),
            is_read=bool(doc.get('isRead', False)),
            created_at=doc.get('createdAt'),
        )

    def to_doc(self):
        return {
            "userId": self.user_id,
            "message": self.message,
            "type": self.type,
            "relatedId": self.related_id,
            "isRead": self.is_read,
            "createdAt": self.created_at,
        }


def to_json(record):
    """camelCase dict for API responses"""
    data = {}
    for key, value in asdict(record).items():
        head, *rest = key.split('_')
        data[head + ''.join(part.title() for part in rest)] = value
    return data

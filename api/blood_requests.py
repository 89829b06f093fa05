import logging

from django.conf import settings
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from . import geocell
from .db import as_object_id, operation_timeout
from .errors import InvalidInput, NotRequestOwner, PersistenceUnavailable, RecordNotFound, RequestNotPending
from .offers import record_rejections, reject_pending_offers, remove_all, restore_pending_offers
from .proximity import find_nearby
from .records import (BLOOD_REQUESTS, BLOOD_TYPES, BloodRequest, RequestStatus, Urgency, now_iso)
from .workflow import Step, WorkflowResult, run_steps

logger = logging.getLogger(__name__)

URGENCY_LEVELS = [u.value for u in Urgency]


def parse_coordinates(lat, lng):
    """(lat, lng) as floats, or None when neither is given"""
    if lat in (None, '') and lng in (None, ''):
        return None
    if lat in (None, '') or lng in (None, ''):
        raise InvalidInput("lat and lng must be given together")
    try:
        point = (float(lat), float(lng))
        geocell.validate_location(*point)
    except (TypeError, ValueError) as e:
        raise InvalidInput(f"Invalid coordinates: {e}")
    return point


def create_request(db, caller, data, timeout=None):
    required = ['patientName', 'bloodType', 'location']
    for field in required:
        if not data.get(field):
            raise InvalidInput(f"{field} is required")
    if data['bloodType'] not in BLOOD_TYPES:
        raise InvalidInput(f"Unknown blood type {data['bloodType']}")
    urgency = data.get('urgency') or Urgency.MEDIUM.value
    if urgency not in URGENCY_LEVELS:
        raise InvalidInput(f"urgency must be one of {', '.join(URGENCY_LEVELS)}")

    point = parse_coordinates(data.get('lat'), data.get('lng'))

    request = BloodRequest(
        id=None,
        user_id=caller.user_id,
        patient_name=data['patientName'].strip(),
        blood_type=data['bloodType'],
        location=data['location'].strip(),
        urgency=urgency,
        status=RequestStatus.PENDING.value,
        created_at=now_iso(),
        contact_person=data.get('contactPerson', ''),
        contact_phone=data.get('contactPhone', ''),
        contact_email=data.get('contactEmail') or caller.email or '',
        notes=data.get('notes'),
    )
    if point:
        request.lat, request.lng = point
        request.geocell_key = geocell.encode(*point, precision=settings.GEOHASH_PRECISION)

    try:
        with operation_timeout(timeout):
            res = db[BLOOD_REQUESTS].insert_one(request.to_doc())
    except PyMongoError:
        raise PersistenceUnavailable()
    request.id = str(res.inserted_id)
    logger.info("Request %s created by %s (%s, %s)", request.id, caller.user_id, request.blood_type, request.urgency)
    return request


def list_requests_for(db, caller, timeout=None):
    try:
        with operation_timeout(timeout):
            cursor = db[BLOOD_REQUESTS].find({"userId": caller.user_id}).sort("createdAt", DESCENDING)
            return [BloodRequest.from_doc(doc) for doc in cursor]
    except PyMongoError:
        raise PersistenceUnavailable()


def cancel_request(db, notifier, caller, request_id, timeout=None):
    """
    Owner withdraws a pending request.

    Pending offers on it are rejected and their donors told, in the same
    all-or-nothing manner as accepting an offer.
    """
    oid = as_object_id(request_id, "Request")
    try:
        with operation_timeout(timeout):
            doc = db[BLOOD_REQUESTS].find_one({"_id": oid})
    except PyMongoError:
        raise PersistenceUnavailable()
    if not doc:
        raise RecordNotFound("Request not found")
    request = BloodRequest.from_doc(doc)
    if request.user_id != caller.user_id:
        raise NotRequestOwner()
    if not request.is_pending:
        raise RequestNotPending()

    result = WorkflowResult(request=request)
    rejected = []

    def close_request():
        updated = db[BLOOD_REQUESTS].find_one_and_update(
            {"_id": oid, "status": RequestStatus.PENDING.value},
            {"$set": {"status": RequestStatus.CANCELLED.value, "cancelledAt": now_iso()}},
            return_document=ReturnDocument.AFTER,
        )
        if not updated:
            raise RequestNotPending()
        result.request = BloodRequest.from_doc(updated)

    def reopen_request(_):
        db[BLOOD_REQUESTS].update_one(
            {"_id": oid, "status": RequestStatus.CANCELLED.value},
            {"$set": {"status": RequestStatus.PENDING.value}, "$unset": {"cancelledAt": ""}},
        )

    def reject_offers():
        rejected.extend(reject_pending_offers(db, request.id))
        return rejected

    def notify_donors():
        result.notifications.extend(record_rejections(notifier, request, rejected))
        return list(result.notifications)

    run_steps("cancel_request", [
        Step("close_request", close_request, undo=reopen_request),
        Step("reject_offers", reject_offers, undo=lambda offers: restore_pending_offers(db, offers)),
        Step("notify_donors", notify_donors, undo=lambda sent: remove_all(notifier, sent)),
    ], timeout=timeout)

    for notification in result.notifications:
        result.warnings.extend(notifier.deliver(notification))
    logger.info("Request %s cancelled; %d pending offer(s) rejected", request.id, len(rejected))
    return result


def nearby_requests(db, caller, center, radius_meters=None, query_bits=None, timeout=None):
    """Pending requests around `center`, the caller's own left out"""
    if radius_meters is None:
        radius_meters = settings.PROXIMITY_RADIUS_METERS
    docs = find_nearby(
        db, BLOOD_REQUESTS, center, radius_meters,
        status_filter=RequestStatus.PENDING.value,
        exclude_owner_id=caller.user_id,
        query_bits=query_bits,
        timeout=timeout,
    )
    return [(BloodRequest.from_doc(doc), doc.get('distanceKm')) for doc in docs]

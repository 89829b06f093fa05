import logging

from django.conf import settings
from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from . import geocell
from .blood_requests import parse_coordinates
from .db import operation_timeout
from .errors import InvalidInput, PersistenceUnavailable, RecordNotFound
from .proximity import find_nearby
from .records import (BLOOD_TYPES, DONATIONS, NOTIFICATION_CHANNELS, USERS, Availability, Donation, Person,
                      compatible_donor_types)

logger = logging.getLogger(__name__)

AVAILABILITY_VALUES = [a.value for a in Availability]


def get_profile(db, caller, timeout=None):
    try:
        with operation_timeout(timeout):
            doc = db[USERS].find_one({"_id": caller.user_id})
    except PyMongoError:
        raise PersistenceUnavailable()
    if not doc:
        raise RecordNotFound("User not found")
    return Person.from_doc(doc)


def update_profile(db, caller, data, timeout=None):
    """
    Apply a partial profile edit.

    Accepted keys: location, lat/lng (both, or both null to clear),
    availability, notificationChannels, phoneNumber. The geohash is
    recomputed whenever coordinates change and removed with them.
    """
    set_fields = {}
    unset_fields = {}

    if 'location' in data:
        set_fields['location'] = str(data['location'] or '').strip()

    if 'lat' in data or 'lng' in data:
        point = parse_coordinates(data.get('lat'), data.get('lng'))
        if point:
            set_fields['lat'], set_fields['lng'] = point
            set_fields['geohash'] = geocell.encode(*point, precision=settings.GEOHASH_PRECISION)
        else:
            unset_fields = {"lat": "", "lng": "", "geohash": ""}

    if 'availability' in data:
        if data['availability'] not in AVAILABILITY_VALUES:
            raise InvalidInput(f"availability must be one of {', '.join(AVAILABILITY_VALUES)}")
        set_fields['availability'] = data['availability']

    if 'notificationChannels' in data:
        channels = data['notificationChannels']
        if not isinstance(channels, list) or any(c not in NOTIFICATION_CHANNELS for c in channels):
            raise InvalidInput(f"notificationChannels must be a list drawn from {', '.join(NOTIFICATION_CHANNELS)}")
        set_fields['notificationChannels'] = list(dict.fromkeys(channels))

    if 'phoneNumber' in data:
        set_fields['phoneNumber'] = data['phoneNumber'] or None

    if not set_fields and not unset_fields:
        raise InvalidInput("No fields to update")

    update = {}
    if set_fields:
        update['$set'] = set_fields
    if unset_fields:
        update['$unset'] = unset_fields

    try:
        with operation_timeout(timeout):
            doc = db[USERS].find_one_and_update(
                {"_id": caller.user_id}, update, return_document=ReturnDocument.AFTER)
    except PyMongoError:
        raise PersistenceUnavailable()
    if not doc:
        raise RecordNotFound("User not found")
    logger.info("Profile %s updated: %s", caller.user_id, ', '.join(sorted({**set_fields, **unset_fields})))
    return Person.from_doc(doc)


def nearby_donors(db, caller, center, radius_meters=None, recipient_blood_type=None, query_bits=None,
                  timeout=None):
    """Available donors around `center`, optionally only those who can give to `recipient_blood_type`"""
    if radius_meters is None:
        radius_meters = settings.PROXIMITY_RADIUS_METERS

    extra = {"isDonor": {"$ne": False}}
    if recipient_blood_type:
        if recipient_blood_type not in BLOOD_TYPES:
            raise InvalidInput(f"Unknown blood type {recipient_blood_type}")
        extra["bloodType"] = {"$in": compatible_donor_types(recipient_blood_type)}

    docs = find_nearby(
        db, USERS, center, radius_meters,
        status_filter=Availability.AVAILABLE.value,
        status_field='availability',
        owner_field='_id',
        exclude_owner_id=caller.user_id,
        extra_filter=extra,
        query_bits=query_bits,
        timeout=timeout,
    )
    return [(Person.from_doc(doc), doc.get('distanceKm')) for doc in docs]


def donation_history(db, caller, timeout=None):
    try:
        with operation_timeout(timeout):
            cursor = db[DONATIONS].find({"donorId": caller.user_id}).sort("donationDate", DESCENDING)
            return [Donation.from_doc(doc) for doc in cursor]
    except PyMongoError:
        raise PersistenceUnavailable()

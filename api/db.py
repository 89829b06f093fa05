import logging

import pymongo
from bson import ObjectId
from bson.errors import InvalidId
from django.conf import settings
from pymongo import ASCENDING, DESCENDING, MongoClient

from .errors import RecordNotFound
from .records import BLOOD_REQUESTS, DONATIONS, NOTIFICATIONS, OFFERS, USERS

logger = logging.getLogger(__name__)

_client = None
_db = None


def get_db():
    global _client, _db
    if _db is None:
        _client = MongoClient(
            settings.MONGO_URI,
            serverSelectionTimeoutMS=settings.MONGO_SERVER_SELECTION_TIMEOUT_MS,
        )
        _db = _client[settings.MONGO_DB_NAME]
        logger.info("Connected to MongoDB at %s, DB: %s", settings.MONGO_URI, settings.MONGO_DB_NAME)
    return _db


def set_db(db):
    """Point the module at an already open database (scripts and tests)"""
    global _db
    _db = db


def operation_timeout(seconds=None):
    """Deadline for every store call made inside the block"""
    if seconds is None:
        seconds = settings.MONGO_OPERATION_TIMEOUT
    return pymongo.timeout(seconds)


def ensure_indexes(db):
    db[BLOOD_REQUESTS].create_index([("status", ASCENDING), ("geohash", ASCENDING)])
    db[BLOOD_REQUESTS].create_index([("userId", ASCENDING)])
    db[USERS].create_index([("availability", ASCENDING), ("geohash", ASCENDING)])
    db[OFFERS].create_index([("requestId", ASCENDING), ("status", ASCENDING)])
    db[OFFERS].create_index([("donorId", ASCENDING)])
    db[NOTIFICATIONS].create_index([("userId", ASCENDING), ("createdAt", DESCENDING)])
    db[DONATIONS].create_index([("donorId", ASCENDING)])
    logger.info("MongoDB indexes ensured")


def as_object_id(value, what="Record"):
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value))
    except (InvalidId, TypeError):
        raise RecordNotFound(f"{what} not found")

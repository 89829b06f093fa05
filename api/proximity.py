import logging

from pymongo import DESCENDING
from pymongo.errors import PyMongoError

from . import geocell
from .db import operation_timeout
from .errors import QueryUnavailable

logger = logging.getLogger(__name__)


def _base_filter(status_field, status_filter, extra_filter):
    query = dict(extra_filter or {})
    if status_filter is not None:
        query[status_field] = status_filter
    return query


def _owned_by(doc, owner_field, owner_id):
    if owner_id is None:
        return False
    return str(doc.get(owner_field)) == str(owner_id)


def find_nearby(db, collection, center, radius_meters, status_filter,
                exclude_owner_id=None, owner_field='userId', status_field='status',
                extra_filter=None, query_bits=None, limit=None, timeout=None):
    """
    Records of `collection` within `radius_meters` of `center`, nearest first.

    Without a center every record matching the filters comes back, newest
    first. Each result is the raw document; located results also carry
    `distanceKm`. Store failures raise QueryUnavailable.
    """
    coll = db[collection]
    base = _base_filter(status_field, status_filter, extra_filter)

    try:
        with operation_timeout(timeout):
            if center is None:
                return _recent(coll, base, owner_field, exclude_owner_id, limit)
            return _within_radius(coll, base, center, radius_meters, owner_field,
                                  exclude_owner_id, query_bits, limit)
    except PyMongoError as e:
        logger.warning("Proximity query on %s failed: %s", collection, e)
        raise QueryUnavailable()


def _recent(coll, base, owner_field, exclude_owner_id, limit):
    results = []
    for doc in coll.find(base).sort("createdAt", DESCENDING):
        if _owned_by(doc, owner_field, exclude_owner_id):
            continue
        results.append(doc)
        if limit and len(results) >= limit:
            break
    return results


def _within_radius(coll, base, center, radius_meters, owner_field, exclude_owner_id, query_bits, limit):
    # 1. One range scan per bounding cell, merged by id
    candidates = {}
    for start, end in geocell.bounding_cells(center, radius_meters, bits=query_bits):
        query = dict(base)
        query["geohash"] = {"$gte": start, "$lt": end}
        for doc in coll.find(query):
            candidates.setdefault(doc['_id'], doc)

    # 2. Drop bounding-box false positives and the caller's own records
    results = []
    for doc in candidates.values():
        if doc.get('lat') is None or doc.get('lng') is None:
            continue
        if _owned_by(doc, owner_field, exclude_owner_id):
            continue
        meters = geocell.distance(center, (doc['lat'], doc['lng']))
        if meters > radius_meters:
            continue
        doc['distanceKm'] = round(meters / 1000, 3)
        results.append((meters, doc))

    # 3. Nearest first
    results.sort(key=lambda item: (item[0], str(item[1]['_id'])))
    docs = [doc for _, doc in results]
    return docs[:limit] if limit else docs

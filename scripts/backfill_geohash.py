"""
Recompute the geohash of every user and blood request that has coordinates.

Records whose stored key is missing or does not match their lat/lng (older
records, or a GEOHASH_PRECISION change) are rewritten; records without
coordinates have any stale key removed. Run with --dry-run to only report.
"""
import os
import sys
from pathlib import Path

import django
from dotenv import load_dotenv

sys.path.insert(0, str(Path(__file__).resolve().parent.parent))

# Load environment variables
load_dotenv()
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'bloodsync.settings')
django.setup()

from django.conf import settings  # noqa: E402

from api import geocell  # noqa: E402
from api.db import ensure_indexes, get_db  # noqa: E402
from api.records import BLOOD_REQUESTS, USERS  # noqa: E402


def expected_key(doc, precision):
    lat, lng = doc.get('lat'), doc.get('lng')
    if lat is None or lng is None:
        return None
    return geocell.encode(lat, lng, precision)


def backfill(db, collection, precision, dry_run=False):
    updated = cleared = invalid = 0
    for doc in db[collection].find({}, {"lat": 1, "lng": 1, "geohash": 1}):
        try:
            key = expected_key(doc, precision)
        except ValueError as e:
            print(f"  Skipping {collection}/{doc['_id']}: {e}")
            invalid += 1
            continue

        if key is None:
            if 'geohash' in doc:
                if not dry_run:
                    db[collection].update_one({"_id": doc['_id']}, {"$unset": {"geohash": ""}})
                cleared += 1
            continue

        if doc.get('geohash') != key:
            if not dry_run:
                db[collection].update_one({"_id": doc['_id']}, {"$set": {"geohash": key}})
            updated += 1

    print(f"{collection}: {updated} key(s) rewritten, {cleared} stale key(s) removed, {invalid} invalid")
    return updated, cleared, invalid


def main(argv=None):
    argv = sys.argv[1:] if argv is None else argv
    dry_run = '--dry-run' in argv
    db = get_db()
    precision = settings.GEOHASH_PRECISION

    print(f"Backfilling geohash keys (precision {precision}){' [dry run]' if dry_run else ''}")
    for collection in (USERS, BLOOD_REQUESTS):
        backfill(db, collection, precision, dry_run=dry_run)

    if not dry_run:
        ensure_indexes(db)
    print("Done.")


if __name__ == "__main__":
    main()

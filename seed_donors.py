import math
import os
import random
import uuid
from datetime import datetime, timedelta, timezone

import django

# Setup Django Environment
os.environ.setdefault('DJANGO_SETTINGS_MODULE', 'bloodsync.settings')
django.setup()

from django.conf import settings  # noqa: E402

from api import geocell  # noqa: E402
from api.db import ensure_indexes, get_db  # noqa: E402
from api.records import (BLOOD_REQUESTS, BLOOD_TYPES, USERS, Availability, RequestStatus, Role,  # noqa: E402
                         Urgency, now_iso)

# Bengaluru and the towns around it
CITY_CENTER = (12.9716, 77.5946)
PLACES = ["Bengaluru", "Mysuru", "Tumakuru", "Hosur", "Kolar", "Mandya", "Ramanagara"]

FIRST_NAMES = ["Aarav", "Diya", "Ishaan", "Meera", "Kabir", "Ananya", "Rohan", "Priya", "Vikram", "Sneha"]
LAST_NAMES = ["Rao", "Iyer", "Reddy", "Nair", "Gowda", "Shetty", "Kumar", "Menon"]


def random_point(center, max_km):
    """Uniform-ish point within `max_km` of `center`"""
    distance_km = max_km * random.random() ** 0.5
    bearing = math.radians(random.uniform(0, 360))
    d_lat = distance_km / 111.0 * math.cos(bearing)
    d_lng = distance_km / (111.0 * math.cos(math.radians(center[0]))) * math.sin(bearing)
    return round(center[0] + d_lat, 6), round(center[1] + d_lng, 6)


def make_person(i, role, lat, lng):
    first = random.choice(FIRST_NAMES)
    last = random.choice(LAST_NAMES)
    last_donation = None
    if random.random() < 0.5:
        last_donation = (datetime.now(timezone.utc) - timedelta(days=random.randint(61, 365))).isoformat()
    return {
        "_id": f"seed-{role}-{i + 1}-{uuid.uuid4().hex[:6]}",
        "firstName": first,
        "lastName": last,
        "email": f"{role}_{i + 1}@seed.bloodsync.local",
        "phoneNumber": f"+9198{random.randint(10000000, 99999999)}",
        "role": role,
        "bloodType": random.choice(BLOOD_TYPES),
        "location": random.choice(PLACES),
        "lat": lat,
        "lng": lng,
        "geohash": geocell.encode(lat, lng, settings.GEOHASH_PRECISION),
        "availability": random.choice([Availability.AVAILABLE.value] * 3 + [Availability.UNAVAILABLE.value]),
        "lastDonationDate": last_donation,
        "isDonor": role == Role.DONOR.value,
        "notificationChannels": ["email"],
        "createdAt": now_iso(),
    }


def seed(donor_count=30, patient_count=5, requests_per_patient=2):
    db = get_db()
    ensure_indexes(db)

    print(f"--- Seeding {donor_count} donors and {patient_count} patients ---")
    # Re-runs replace the previous seed set
    db[USERS].delete_many({"_id": {"$regex": "^seed-"}})
    db[BLOOD_REQUESTS].delete_many({"userId": {"$regex": "^seed-"}})

    people = []
    for i in range(donor_count):
        people.append(make_person(i, Role.DONOR.value, *random_point(CITY_CENTER, 150)))
    patients = []
    for i in range(patient_count):
        patients.append(make_person(i, Role.PATIENT.value, *random_point(CITY_CENTER, 60)))
    db[USERS].insert_many(people + patients)
    for p in people + patients:
        print(f"Seeded {p['firstName']} {p['lastName']} ({p['bloodType']}, {p['location']})")

    print("--- Seeding blood requests ---")
    count = 0
    for patient in patients:
        for _ in range(requests_per_patient):
            lat, lng = random_point((patient['lat'], patient['lng']), 10)
            db[BLOOD_REQUESTS].insert_one({
                "userId": patient['_id'],
                "patientName": f"{patient['firstName']} {patient['lastName']}",
                "bloodType": random.choice(BLOOD_TYPES),
                "location": patient['location'],
                "lat": lat,
                "lng": lng,
                "geohash": geocell.encode(lat, lng, settings.GEOHASH_PRECISION),
                "urgency": random.choice([u.value for u in Urgency]),
                "status": RequestStatus.PENDING.value,
                "createdAt": now_iso(),
                "contactPerson": patient['firstName'],
                "contactPhone": patient['phoneNumber'],
                "contactEmail": patient['email'],
            })
            count += 1

    print(f"--- Successfully seeded {len(people)} donors, {len(patients)} patients, {count} requests ---")


if __name__ == "__main__":
    seed()

import mongomock
import pytest
from bson import ObjectId
from pymongo.errors import AutoReconnect

from api import blood_requests, geocell, profiles
from api.errors import InvalidInput, NotRequestOwner, PersistenceUnavailable, RequestNotPending
from api.records import BLOOD_REQUESTS, NOTIFICATIONS, OFFERS, USERS, Caller


def test_create_request_derives_the_geohash(db, make_user):
    patient = make_user('P', role='patient')
    created = blood_requests.create_request(db, patient, {
        "patientName": " Meera Iyer ",
        "bloodType": 'AB+',
        "location": 'Manipal Hospital',
        "urgency": 'High',
        "lat": '12.9591',
        "lng": 77.6480,
    })

    doc = db[BLOOD_REQUESTS].find_one({"_id": ObjectId(created.id)})
    assert doc['status'] == 'Pending'
    assert doc['patientName'] == 'Meera Iyer'
    assert doc['geohash'] == geocell.encode(12.9591, 77.6480)
    assert doc['contactEmail'] == 'p@example.com'
    assert doc['createdAt'].endswith('+00:00')


def test_create_request_without_coordinates(db):
    created = blood_requests.create_request(db, Caller('P'), {
        "patientName": "Ravi", "bloodType": 'B-', "location": 'Mysuru'})
    doc = db[BLOOD_REQUESTS].find_one({"_id": ObjectId(created.id)})
    assert 'geohash' not in doc
    assert doc['urgency'] == 'Medium'


@pytest.mark.parametrize("data", [
    {"bloodType": 'A+', "location": 'X'},
    {"patientName": 'A', "bloodType": 'C+', "location": 'X'},
    {"patientName": 'A', "bloodType": 'A+', "location": 'X', "urgency": 'Whenever'},
    {"patientName": 'A', "bloodType": 'A+', "location": 'X', "lat": 12.9},
    {"patientName": 'A', "bloodType": 'A+', "location": 'X', "lat": 95, "lng": 10},
    {"patientName": 'A', "bloodType": 'A+', "location": 'X', "lat": 'north', "lng": 10},
])
def test_create_request_validation(db, data):
    with pytest.raises(InvalidInput):
        blood_requests.create_request(db, Caller('P'), data)
    assert db[BLOOD_REQUESTS].count_documents({}) == 0


def test_list_requests_for_owner(db, make_request):
    older = make_request('P', created_at='2024-01-01T00:00:00.000000+00:00')
    newer = make_request('P', created_at='2024-02-01T00:00:00.000000+00:00')
    make_request('Q')
    assert [r.id for r in blood_requests.list_requests_for(db, Caller('P'))] == [newer, older]


@pytest.fixture
def offered(workflow, make_user, make_request):
    patient = make_user('P', role='patient')
    donors = [make_user('D1'), make_user('D2')]
    request_id = make_request('P')
    offers = [workflow.create_offer(d, request_id).offer for d in donors]
    return patient, request_id, offers


def test_cancel_rejects_pending_offers_and_tells_donors(db, notifier, offered):
    patient, request_id, offers = offered

    result = blood_requests.cancel_request(db, notifier, patient, request_id)

    doc = db[BLOOD_REQUESTS].find_one({"_id": ObjectId(request_id)})
    assert doc['status'] == 'Cancelled'
    assert 'cancelledAt' in doc
    assert {o['status'] for o in db[OFFERS].find()} == {'rejected'}
    assert sorted(n.user_id for n in result.notifications) == ['D1', 'D2']
    assert db[NOTIFICATIONS].count_documents({"type": 'offer_rejected'}) == 2


def test_cancel_is_owner_only_and_once(db, notifier, offered):
    patient, request_id, _ = offered
    with pytest.raises(NotRequestOwner):
        blood_requests.cancel_request(db, notifier, Caller('D1'), request_id)

    blood_requests.cancel_request(db, notifier, patient, request_id)
    with pytest.raises(RequestNotPending):
        blood_requests.cancel_request(db, notifier, patient, request_id)


def test_cancel_rolls_back_when_notifications_cannot_be_stored(db, notifier, offered, monkeypatch):
    patient, request_id, _ = offered
    original_insert = mongomock.collection.Collection.insert_one

    def failing_insert(self, document, *args, **kwargs):
        if self.name == NOTIFICATIONS:
            raise AutoReconnect("connection reset")
        return original_insert(self, document, *args, **kwargs)

    monkeypatch.setattr(mongomock.collection.Collection, 'insert_one', failing_insert)

    with pytest.raises(PersistenceUnavailable):
        blood_requests.cancel_request(db, notifier, patient, request_id)

    assert db[BLOOD_REQUESTS].find_one({"_id": ObjectId(request_id)})['status'] == 'Pending'
    assert {o['status'] for o in db[OFFERS].find()} == {'pending'}


def test_profile_location_edit_recomputes_and_clears_the_geohash(db, make_user):
    caller = make_user('D1')

    person = profiles.update_profile(db, caller, {"lat": 12.97, "lng": 77.59, "location": 'Indiranagar'})
    assert person.geocell_key == geocell.encode(12.97, 77.59)
    assert person.location == 'Indiranagar'

    person = profiles.update_profile(db, caller, {"lat": None, "lng": None})
    doc = db[USERS].find_one({"_id": 'D1'})
    assert 'geohash' not in doc and 'lat' not in doc
    assert person.geocell_key is None


def test_profile_availability_and_channels(db, make_user):
    caller = make_user('D1')
    person = profiles.update_profile(db, caller, {
        "availability": 'Unavailable', "notificationChannels": ['sms', 'email', 'sms']})
    assert person.availability == 'Unavailable'
    assert person.notification_channels == ['sms', 'email']

    with pytest.raises(InvalidInput):
        profiles.update_profile(db, caller, {"availability": 'Busy'})
    with pytest.raises(InvalidInput):
        profiles.update_profile(db, caller, {"notificationChannels": ['pigeon']})
    with pytest.raises(InvalidInput):
        profiles.update_profile(db, caller, {})


def test_nearby_donors_filters_by_availability_and_compatibility(db, make_user):
    patient = make_user('P', 'A+', lat=12.90, lng=77.59, role='patient', isDonor=False)
    make_user('O_NEG', 'O-', lat=12.95, lng=77.60)
    make_user('A_POS', 'A+', lat=12.92, lng=77.61)
    make_user('B_POS', 'B+', lat=12.91, lng=77.59)
    make_user('AWAY', 'O-', lat=12.91, lng=77.60, availability='Unavailable')
    make_user('FAR', 'O-', lat=28.61, lng=77.21)

    found = profiles.nearby_donors(db, patient, (12.90, 77.59), 50000, recipient_blood_type='A+')
    assert [p.id for p, _ in found] == ['A_POS', 'O_NEG']

    everyone = profiles.nearby_donors(db, patient, (12.90, 77.59), 50000)
    assert [p.id for p, _ in everyone] == ['B_POS', 'A_POS', 'O_NEG']


def test_donation_history(db, workflow, offered):
    patient, request_id, offers = offered
    workflow.respond_to_offer(patient, offers[0].id, 'accept')

    [donation] = profiles.donation_history(db, Caller('D1'))
    assert donation.request_id == request_id
    assert profiles.donation_history(db, Caller('D2')) == []

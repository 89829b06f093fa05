import datetime

import jwt
import pytest
from django.conf import settings

from api.records import Caller


@pytest.fixture(autouse=True)
def quiet_senders(monkeypatch, senders):
    # Views build their own Notifier; point it at the fake senders
    monkeypatch.setattr('api.notifier.get_senders', lambda: senders)


def test_requests_need_a_token(api_client):
    resp = api_client().get('/api/requests/')
    assert resp.status_code == 401
    assert resp.json()['code'] == 'AUTH_REQUIRED'


def test_invalid_and_expired_tokens(api_client, make_user):
    make_user('P')
    client = api_client()
    client.credentials(HTTP_AUTHORIZATION='Bearer not-a-jwt')
    assert client.get('/api/requests/').json()['code'] == 'INVALID_TOKEN'

    expired = jwt.encode(
        {"id": 'P', "exp": datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(minutes=1)},
        settings.SECRET_KEY, algorithm='HS256')
    client.credentials(HTTP_AUTHORIZATION=f'Bearer {expired}')
    assert client.get('/api/requests/').json()['code'] == 'TOKEN_EXPIRED'


def test_token_for_a_deleted_user(api_client):
    resp = api_client(Caller('ghost')).get('/api/requests/')
    assert resp.status_code == 401
    assert resp.json()['code'] == 'USER_NOT_FOUND'


def test_offer_lifecycle_over_http(api_client, make_user, senders):
    patient = make_user('P', 'O-', role='patient')
    d1 = make_user('D1', 'O-')
    d2 = make_user('D2', 'O-')

    resp = api_client(patient).post('/api/requests/', {
        "patientName": 'Kabir Shetty', "bloodType": 'O-', "location": 'Apollo',
        "urgency": 'High', "lat": 12.90, "lng": 77.59,
    }, format='json')
    assert resp.status_code == 201
    request_id = resp.json()['request']['id']
    assert resp.json()['request']['status'] == 'Pending'

    nearby = api_client(d1).get('/api/requests/nearby/', {"lat": 12.95, "lng": 77.60, "radius": 20}).json()
    assert [r['id'] for r in nearby] == [request_id]
    assert nearby[0]['distanceKm'] == pytest.approx(5.66, abs=0.05)

    # The owner never sees their own request
    assert api_client(patient).get('/api/requests/nearby/', {"lat": 12.9, "lng": 77.59}).json() == []

    o1 = api_client(d1).post(f'/api/requests/{request_id}/offers/').json()['offer']
    resp = api_client(d2).post(f'/api/requests/{request_id}/offers/')
    assert resp.status_code == 201
    o2 = resp.json()['offer']

    listed = api_client(patient).get(f'/api/requests/{request_id}/offers/').json()
    assert {o['id'] for o in listed} == {o1['id'], o2['id']}

    resp = api_client(patient).post(f"/api/offers/{o1['id']}/respond/", {"decision": 'accept'}, format='json')
    assert resp.status_code == 200
    body = resp.json()
    assert body['request']['status'] == 'Fulfilled'
    assert body['offer']['status'] == 'accepted'
    assert body['donation']['donorId'] == 'D1'
    assert body['warnings'] == []

    resp = api_client(patient).post(f"/api/offers/{o2['id']}/respond/", {"decision": 'accept'}, format='json')
    assert resp.status_code == 409
    assert resp.json()['code'] == 'REQUEST_NOT_PENDING'

    assert [o['status'] for o in api_client(d2).get('/api/offers/').json()] == ['rejected']
    assert len(api_client(d1).get('/api/donations/').json()) == 1
    assert len(senders['email'].sent) == 4


def test_error_bodies_carry_a_code(api_client, make_user, make_request):
    patient = make_user('P')
    request_id = make_request('P')

    resp = api_client(patient).post(f'/api/requests/{request_id}/offers/')
    assert resp.status_code == 400
    assert resp.json() == {
        "error": "You cannot offer to donate for your own request.", "code": 'SELF_DONATION'}

    resp = api_client(patient).post('/api/requests/000000000000000000000000/cancel/')
    assert resp.status_code == 404

    resp = api_client(patient).get('/api/requests/nearby/', {"lat": 12.9})
    assert resp.status_code == 400
    assert resp.json()['code'] == 'INVALID_INPUT'

    resp = api_client(patient).get('/api/requests/nearby/', {"lat": 12.9, "lng": 77.5, "radius": 'far'})
    assert resp.status_code == 400


def test_nearby_without_location_falls_back_to_recent(api_client, make_user, make_request):
    donor = make_user('D1')
    old = make_request('P', created_at='2024-01-01T00:00:00.000000+00:00')
    new = make_request('Q', created_at='2024-05-01T00:00:00.000000+00:00')
    make_request('D1')

    resp = api_client(donor).get('/api/requests/nearby/')
    assert [r['id'] for r in resp.json()] == [new, old]
    assert all(r['distanceKm'] is None for r in resp.json())


def test_nearby_search_outage_is_a_503(api_client, make_user, monkeypatch):
    from api.errors import QueryUnavailable

    def down(*args, **kwargs):
        raise QueryUnavailable()

    monkeypatch.setattr('api.blood_requests.find_nearby', down)
    resp = api_client(make_user('D1')).get('/api/requests/nearby/', {"lat": 12.9, "lng": 77.5})
    assert resp.status_code == 503
    assert resp.json()['code'] == 'QUERY_UNAVAILABLE'


def test_notifications_and_mark_read(api_client, make_user, make_request):
    patient = make_user('P')
    donor = make_user('D1')
    request_id = make_request('P')
    api_client(donor).post(f'/api/requests/{request_id}/offers/')

    body = api_client(patient).get('/api/notifications/').json()
    assert body['unreadCount'] == 1
    [note] = body['notifications']
    assert note['relatedId'] == request_id

    resp = api_client(donor).post(f"/api/notifications/{note['id']}/read/")
    assert resp.status_code == 403

    resp = api_client(patient).post(f"/api/notifications/{note['id']}/read/")
    assert resp.json()['notification']['isRead'] is True
    assert api_client(patient).get('/api/notifications/').json()['unreadCount'] == 0


def test_profile_patch_and_nearby_donors(api_client, make_user):
    patient = make_user('P', 'B+', role='patient', isDonor=False)
    donor = make_user('D1', 'O+')

    resp = api_client(donor).patch('/api/profile/', {"lat": 12.93, "lng": 77.62}, format='json')
    assert resp.status_code == 200
    assert resp.json()['profile']['geocellKey']

    found = api_client(patient).get('/api/donors/nearby/', {
        "lat": 12.90, "lng": 77.59, "radius": 25, "bloodType": 'B+'}).json()
    assert [p['id'] for p in found] == ['D1']

    found = api_client(patient).get('/api/donors/nearby/', {
        "lat": 12.90, "lng": 77.59, "radius": 25, "bloodType": 'O-'}).json()
    assert found == []

    resp = api_client(donor).patch('/api/profile/', {"availability": 'Sometimes'}, format='json')
    assert resp.status_code == 400
    assert api_client(donor).get('/api/profile/').json()['availability'] == 'Available'

from rest_framework import status
from rest_framework.response import Response
from rest_framework.views import APIView

from . import blood_requests, profiles
from .auth_utils import authenticate_request
from .blood_requests import parse_coordinates
from .db import get_db
from .errors import BloodSyncError, InvalidInput
from .notifier import Notifier
from .offers import OfferWorkflow
from .records import to_json


def error_response(e):
    return Response(e.to_dict(), status=e.http_status)


def workflow_response(result, status_code=status.HTTP_200_OK):
    body = {
        "success": True,
        "offer": to_json(result.offer) if result.offer else None,
        "request": to_json(result.request) if result.request else None,
        "donation": to_json(result.donation) if result.donation else None,
        "notifications": [to_json(n) for n in result.notifications],
        "warnings": [w.to_dict() for w in result.warnings],
    }
    return Response(body, status=status_code)


def with_distance(pairs):
    items = []
    for record, distance_km in pairs:
        item = to_json(record)
        item['distanceKm'] = distance_km
        items.append(item)
    return items


def search_area(request):
    """(center, radius_meters) from ?lat=&lng=&radius= (radius in km); center is None without coordinates"""
    params = request.query_params
    center = parse_coordinates(params.get('lat'), params.get('lng'))
    radius = params.get('radius')
    if radius in (None, ''):
        return center, None
    try:
        radius_km = float(radius)
    except ValueError:
        raise InvalidInput("radius must be a number of kilometres")
    if radius_km < 0:
        raise InvalidInput("radius must not be negative")
    return center, radius_km * 1000


class NearbyRequestsView(APIView):
    @authenticate_request
    def get(self, request):
        """Pending requests near the donor; newest first when no location is shared"""
        try:
            center, radius = search_area(request)
            found = blood_requests.nearby_requests(get_db(), request.caller, center, radius)
            return Response(with_distance(found))
        except BloodSyncError as e:
            return error_response(e)


class NearbyDonorsView(APIView):
    @authenticate_request
    def get(self, request):
        try:
            center, radius = search_area(request)
            found = profiles.nearby_donors(
                get_db(), request.caller, center, radius,
                recipient_blood_type=request.query_params.get('bloodType'),
            )
            return Response(with_distance(found))
        except BloodSyncError as e:
            return error_response(e)


class BloodRequestView(APIView):
    @authenticate_request
    def get(self, request):
        """Requests created by the caller"""
        try:
            mine = blood_requests.list_requests_for(get_db(), request.caller)
            return Response([to_json(r) for r in mine])
        except BloodSyncError as e:
            return error_response(e)

    @authenticate_request
    def post(self, request):
        try:
            created = blood_requests.create_request(get_db(), request.caller, request.data)
            return Response({"success": True, "request": to_json(created)}, status=status.HTTP_201_CREATED)
        except BloodSyncError as e:
            return error_response(e)


class CancelRequestView(APIView):
    @authenticate_request
    def post(self, request, request_id):
        db = get_db()
        try:
            result = blood_requests.cancel_request(db, Notifier(db), request.caller, request_id)
            return workflow_response(result)
        except BloodSyncError as e:
            return error_response(e)


class RequestOffersView(APIView):
    @authenticate_request
    def get(self, request, request_id):
        """Offers received on one of the caller's requests"""
        db = get_db()
        try:
            offers = OfferWorkflow(db, Notifier(db)).offers_for_request(request.caller, request_id)
            return Response([to_json(o) for o in offers])
        except BloodSyncError as e:
            return error_response(e)

    @authenticate_request
    def post(self, request, request_id):
        """Offer to donate for a request"""
        db = get_db()
        try:
            result = OfferWorkflow(db, Notifier(db)).create_offer(request.caller, request_id)
            return workflow_response(result, status.HTTP_201_CREATED)
        except BloodSyncError as e:
            return error_response(e)


class MyOffersView(APIView):
    @authenticate_request
    def get(self, request):
        db = get_db()
        try:
            offers = OfferWorkflow(db, Notifier(db)).offers_by_donor(request.caller)
            return Response([to_json(o) for o in offers])
        except BloodSyncError as e:
            return error_response(e)


class OfferResponseView(APIView):
    @authenticate_request
    def post(self, request, offer_id):
        """Accept or reject an offer: {"decision": "accept" | "reject"}"""
        db = get_db()
        try:
            result = OfferWorkflow(db, Notifier(db)).respond_to_offer(
                request.caller, offer_id, request.data.get('decision'))
            return workflow_response(result)
        except BloodSyncError as e:
            return error_response(e)


class NotificationView(APIView):
    @authenticate_request
    def get(self, request):
        notifier = Notifier(get_db())
        try:
            items = notifier.list_for(request.caller.user_id)
            return Response({
                "notifications": [to_json(n) for n in items],
                "unreadCount": notifier.unread_count(request.caller.user_id),
            })
        except BloodSyncError as e:
            return error_response(e)


class NotificationReadView(APIView):
    @authenticate_request
    def post(self, request, notification_id):
        notifier = Notifier(get_db())
        try:
            notification = notifier.mark_read(request.caller, notification_id)
            return Response({"success": True, "notification": to_json(notification)})
        except BloodSyncError as e:
            return error_response(e)


class DonationHistoryView(APIView):
    @authenticate_request
    def get(self, request):
        try:
            history = profiles.donation_history(get_db(), request.caller)
            return Response([to_json(d) for d in history])
        except BloodSyncError as e:
            return error_response(e)


class ProfileView(APIView):
    @authenticate_request
    def get(self, request):
        try:
            return Response(to_json(profiles.get_profile(get_db(), request.caller)))
        except BloodSyncError as e:
            return error_response(e)

    @authenticate_request
    def patch(self, request):
        """Partial update: location, lat/lng, availability, notificationChannels, phoneNumber"""
        try:
            person = profiles.update_profile(get_db(), request.caller, request.data)
            return Response({"success": True, "profile": to_json(person)})
        except BloodSyncError as e:
            return error_response(e)

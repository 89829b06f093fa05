from django.urls import path
from .views import (
    NearbyRequestsView, NearbyDonorsView,
    BloodRequestView, CancelRequestView, RequestOffersView,
    MyOffersView, OfferResponseView,
    NotificationView, NotificationReadView,
    DonationHistoryView, ProfileView,
)

urlpatterns = [
    # Proximity search
    path('requests/nearby/', NearbyRequestsView.as_view(), name='nearby-requests'),
    path('donors/nearby/', NearbyDonorsView.as_view(), name='nearby-donors'),

    # Requests
    path('requests/', BloodRequestView.as_view(), name='requests'),
    path('requests/<str:request_id>/cancel/', CancelRequestView.as_view(), name='request-cancel'),
    path('requests/<str:request_id>/offers/', RequestOffersView.as_view(), name='request-offers'),

    # Offers
    path('offers/', MyOffersView.as_view(), name='my-offers'),
    path('offers/<str:offer_id>/respond/', OfferResponseView.as_view(), name='offer-respond'),

    # Notifications
    path('notifications/', NotificationView.as_view(), name='notifications'),
    path('notifications/<str:notification_id>/read/', NotificationReadView.as_view(), name='notification-read'),

    # Donor
    path('donations/', DonationHistoryView.as_view(), name='donation-history'),
    path('profile/', ProfileView.as_view(), name='profile'),
]

"""
Authentication Utilities for JWT Token Validation
Ensures that:
1. JWT token is valid
2. User still exists in database
"""
import datetime
import logging
from functools import wraps

import jwt
from django.conf import settings
from pymongo.errors import PyMongoError
from rest_framework import status
from rest_framework.response import Response

from .db import get_db
from .records import USERS, Caller

logger = logging.getLogger(__name__)


def _unauthorized(message, code):
    return Response({"error": message, "code": code}, status=status.HTTP_401_UNAUTHORIZED)


def issue_token(user_id, email=None, role=None, lifetime=None):
    """Signed HS256 token in the shape authenticate_request expects"""
    now = datetime.datetime.now(datetime.timezone.utc)
    payload = {
        "id": user_id,
        "email": email,
        "role": role,
        "iat": now,
        "exp": now + (lifetime or datetime.timedelta(days=1)),
    }
    return jwt.encode(payload, settings.SECRET_KEY, algorithm='HS256')


def authenticate_request(view_func):
    """
    Decorator to validate JWT token and verify user exists in database.

    Usage:
        @authenticate_request
        def get(self, request):
            caller = request.caller  # Caller(user_id, email, role)
    """
    @wraps(view_func)
    def wrapper(self, request, *args, **kwargs):
        # 1. Extract Token from Authorization Header
        auth_header = request.headers.get('Authorization')
        if not auth_header or not auth_header.startswith('Bearer '):
            return _unauthorized("Authorization token required", "AUTH_REQUIRED")

        token = auth_header.split(' ', 1)[1]

        # 2. Decode and Validate JWT
        try:
            payload = jwt.decode(token, settings.SECRET_KEY, algorithms=['HS256'])
        except jwt.ExpiredSignatureError:
            return _unauthorized("Token has expired", "TOKEN_EXPIRED")
        except jwt.InvalidTokenError:
            return _unauthorized("Invalid token", "INVALID_TOKEN")

        user_id = payload.get('id')
        if not user_id:
            return _unauthorized("Invalid token payload", "INVALID_PAYLOAD")

        # 3. Verify User Still Exists in Database
        try:
            user = get_db()[USERS].find_one({"_id": user_id}, {"email": 1, "role": 1})
        except PyMongoError as e:
            logger.warning("User lookup during authentication failed: %s", e)
            return Response(
                {"error": "Database Service Unavailable", "code": "PERSISTENCE_UNAVAILABLE"},
                status=status.HTTP_503_SERVICE_UNAVAILABLE
            )

        if not user:
            return _unauthorized("User no longer exists", "USER_NOT_FOUND")

        # 4. Inject validated identity into request
        request.caller = Caller(
            user_id=user_id,
            email=payload.get('email') or user.get('email'),
            role=payload.get('role') or user.get('role'),
        )

        return view_func(self, request, *args, **kwargs)

    return wrapper

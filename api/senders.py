"""
External notification senders.

Every sender exposes send(recipient, message) and answers
{"success": bool, "id": ...}; it may also raise. The registry maps a
channel name ("email", "sms") to the sender used for it and is built once
when the app starts.
"""
import logging
import uuid

import requests
from django.conf import settings
from django.core.mail import send_mail

logger = logging.getLogger(__name__)

_senders = {}


class EmailSender:
    channel = 'email'

    def __init__(self, subject="BloodSync"):
        self.subject = subject

    def send(self, recipient, message):
        sent = send_mail(
            subject=self.subject,
            message=message,
            from_email=settings.DEFAULT_FROM_EMAIL,
            recipient_list=[recipient],
            fail_silently=False,
        )
        return {"success": sent == 1, "id": None}


class SmsGatewaySender:
    channel = 'sms'

    def __init__(self, url, token='', timeout=5):
        self.url = url
        self.token = token
        self.timeout = timeout

    def send(self, recipient, message):
        headers = {}
        if self.token:
            headers['Authorization'] = f'Bearer {self.token}'
        resp = requests.post(
            self.url,
            json={"phoneNumber": recipient, "message": message, "type": "SMS"},
            headers=headers,
            timeout=self.timeout,
        )
        resp.raise_for_status()
        body = resp.json()
        return {"success": bool(body.get('success')), "id": body.get('id')}


class LogSender:
    """Logs the message instead of delivering it"""

    def __init__(self, channel):
        self.channel = channel

    def send(self, recipient, message):
        logger.info("SIMULATED %s to %s: %s", self.channel.upper(), recipient, message)
        return {"success": True, "id": f"sim-{uuid.uuid4().hex[:12]}"}


def initialize_senders():
    _senders.clear()
    _senders['email'] = EmailSender()

    if settings.SMS_GATEWAY_URL:
        _senders['sms'] = SmsGatewaySender(
            settings.SMS_GATEWAY_URL,
            token=settings.SMS_GATEWAY_TOKEN,
            timeout=settings.SMS_GATEWAY_TIMEOUT,
        )
        logger.info("SMS gateway sender initialized: %s", settings.SMS_GATEWAY_URL)
    else:
        _senders['sms'] = LogSender('sms')
        logger.warning("SMS_GATEWAY_URL not set. SMS notifications will only be logged.")
    return _senders


def get_senders():
    if not _senders:
        initialize_senders()
    return _senders

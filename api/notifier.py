import logging
import time

from django.conf import settings
from pymongo import DESCENDING
from pymongo.errors import PyMongoError

from .db import as_object_id, operation_timeout
from .errors import NotificationSendFailed, NotRecipient, PersistenceUnavailable, RecordNotFound
from .records import NOTIFICATIONS, USERS, Notification, now_iso
from .senders import get_senders

logger = logging.getLogger(__name__)


class Notifier:
    """
    In-app notification records plus best-effort external delivery.

    record() is durable: store errors propagate to the caller. deliver()
    never raises; a channel that still fails after the retries is logged and
    returned as a NotificationSendFailed warning.
    """

    def __init__(self, db, senders=None, max_attempts=None, backoff_seconds=None, sleep=time.sleep):
        self.db = db
        self._senders = senders
        self.max_attempts = max_attempts if max_attempts is not None else settings.NOTIFY_MAX_ATTEMPTS
        self.backoff_seconds = backoff_seconds if backoff_seconds is not None else settings.NOTIFY_BACKOFF_SECONDS
        self.sleep = sleep

    @property
    def senders(self):
        if self._senders is None:
            self._senders = get_senders()
        return self._senders

    def record(self, user_id, message, type, related_id):
        notification = Notification(
            id=None,
            user_id=user_id,
            message=message,
            type=type.value if hasattr(type, 'value') else type,
            related_id=related_id,
            is_read=False,
            created_at=now_iso(),
        )
        res = self.db[NOTIFICATIONS].insert_one(notification.to_doc())
        notification.id = str(res.inserted_id)
        return notification

    def remove(self, notification):
        """Undo for record() when the enclosing operation is rolled back"""
        self.db[NOTIFICATIONS].delete_one({"_id": as_object_id(notification.id)})

    def deliver(self, notification):
        warnings = []
        try:
            person = self.db[USERS].find_one({"_id": notification.user_id})
        except PyMongoError as e:
            logger.warning("Could not load recipient %s for delivery: %s", notification.user_id, e)
            return [NotificationSendFailed("Recipient lookup failed", user_id=notification.user_id)]
        if not person:
            return warnings

        addresses = {"email": person.get('email'), "sms": person.get('phoneNumber')}
        for channel in person.get('notificationChannels', ['email']):
            sender = self.senders.get(channel)
            recipient = addresses.get(channel)
            if sender is None or not recipient:
                continue
            failure = self._send_with_retry(sender, channel, recipient, notification)
            if failure:
                warnings.append(failure)
        return warnings

    def _send_with_retry(self, sender, channel, recipient, notification):
        last_error = None
        for attempt in range(self.max_attempts):
            if attempt:
                self.sleep(self.backoff_seconds * (2 ** (attempt - 1)))
            try:
                result = sender.send(recipient, notification.message)
                if result and result.get('success'):
                    return None
                last_error = (result or {}).get('error', 'sender reported failure')
            except Exception as e:
                last_error = str(e)

        logger.warning("%s delivery to user %s failed after %d attempts: %s",
                       channel, notification.user_id, self.max_attempts, last_error)
        return NotificationSendFailed(
            f"{channel} delivery failed: {last_error}",
            channel=channel,
            user_id=notification.user_id,
        )

    def notify(self, user_id, message, type, related_id):
        """Record then deliver; returns (notification, warnings)"""
        notification = self.record(user_id, message, type, related_id)
        return notification, self.deliver(notification)

    def list_for(self, user_id, timeout=None):
        try:
            with operation_timeout(timeout):
                cursor = self.db[NOTIFICATIONS].find({"userId": user_id}).sort("createdAt", DESCENDING)
                return [Notification.from_doc(doc) for doc in cursor]
        except PyMongoError:
            raise PersistenceUnavailable()

    def unread_count(self, user_id, timeout=None):
        try:
            with operation_timeout(timeout):
                return self.db[NOTIFICATIONS].count_documents({"userId": user_id, "isRead": False})
        except PyMongoError:
            raise PersistenceUnavailable()

    def mark_read(self, caller, notification_id, timeout=None):
        oid = as_object_id(notification_id, "Notification")
        try:
            with operation_timeout(timeout):
                doc = self.db[NOTIFICATIONS].find_one({"_id": oid})
                if not doc:
                    raise RecordNotFound("Notification not found")
                if doc.get('userId') != caller.user_id:
                    raise NotRecipient()
                if not doc.get('isRead'):
                    self.db[NOTIFICATIONS].update_one({"_id": oid}, {"$set": {"isRead": True}})
                    doc['isRead'] = True
                return Notification.from_doc(doc)
        except PyMongoError:
            raise PersistenceUnavailable()

"""
Error kinds raised by the matching and offer workflow.

Every error carries a human-readable message, a stable code for clients,
the HTTP status the views answer with, and whether retrying can help.
"""


class BloodSyncError(Exception):
    code = "ERROR"
    http_status = 500
    retryable = False
    default_message = "Something went wrong"

    def __init__(self, message=None):
        self.message = message or self.default_message
        super().__init__(self.message)

    def to_dict(self):
        return {"error": self.message, "code": self.code}


class QueryUnavailable(BloodSyncError):
    code = "QUERY_UNAVAILABLE"
    http_status = 503
    retryable = True
    default_message = "Nearby search is unavailable right now. Try again or search without your location."


class PersistenceUnavailable(BloodSyncError):
    code = "PERSISTENCE_UNAVAILABLE"
    http_status = 503
    retryable = True
    default_message = "The database could not be reached. Nothing was changed, please retry."


class InvalidInput(BloodSyncError):
    code = "INVALID_INPUT"
    http_status = 400
    default_message = "Invalid input"


class SelfDonationError(BloodSyncError):
    code = "SELF_DONATION"
    http_status = 400
    default_message = "You cannot offer to donate for your own request."


class NotRequestOwner(BloodSyncError):
    code = "NOT_REQUEST_OWNER"
    http_status = 403
    default_message = "Only the owner of this request can do that."


class NotRecipient(BloodSyncError):
    code = "NOT_RECIPIENT"
    http_status = 403
    default_message = "This notification belongs to another user."


class RecordNotFound(BloodSyncError):
    code = "NOT_FOUND"
    http_status = 404
    default_message = "Record not found"


class RequestNotPending(BloodSyncError):
    code = "REQUEST_NOT_PENDING"
    http_status = 409
    default_message = "This request was already handled."


class OfferNotPending(BloodSyncError):
    code = "OFFER_NOT_PENDING"
    http_status = 409
    default_message = "This offer was already handled."


class DuplicateOfferError(BloodSyncError):
    code = "DUPLICATE_OFFER"
    http_status = 409
    default_message = "You already offered to donate for this request."


class NotificationSendFailed(BloodSyncError):
    """External delivery failed. Reported as a warning, never raised to callers."""
    code = "NOTIFICATION_SEND_FAILED"
    http_status = 502
    retryable = True
    default_message = "The notification could not be delivered."

    def __init__(self, message=None, channel=None, user_id=None):
        super().__init__(message)
        self.channel = channel
        self.user_id = user_id

    def to_dict(self):
        data = super().to_dict()
        data["channel"] = self.channel
        data["userId"] = self.user_id
        return data

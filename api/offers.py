import logging
from dataclasses import replace

from pymongo import DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from .db import as_object_id, operation_timeout
from .errors import (DuplicateOfferError, InvalidInput, NotRequestOwner, OfferNotPending,
                     PersistenceUnavailable, RecordNotFound, RequestNotPending, SelfDonationError)
from .records import (BLOOD_REQUESTS, DONATIONS, OFFERS, USERS, BloodRequest, Decision, Donation,
                      NotificationType, Offer, OfferStatus, Person, RequestStatus, now_iso)
from .workflow import ISOLATE, Step, WorkflowResult, run_steps

logger = logging.getLogger(__name__)


def match_message(request):
    return f"A donor has offered to fulfill your request for {request.blood_type} blood."


def accepted_message(request):
    return f"Your donation offer for {request.blood_type} blood has been accepted!"


def rejected_message(request):
    return f"Your offer for request #{request.id[:5]} was not accepted this time."


def parse_decision(decision):
    try:
        return Decision(decision)
    except ValueError:
        raise InvalidInput("decision must be 'accept' or 'reject'")


def reject_pending_offers(db, request_id, keep_offer_id=None):
    """
    Move every pending offer of a request to rejected, except `keep_offer_id`.

    Returns the offers this call actually moved. If the store fails halfway
    the offers already moved are put back before the error propagates.
    """
    query = {"requestId": request_id, "status": OfferStatus.PENDING.value}
    if keep_offer_id:
        query["_id"] = {"$ne": as_object_id(keep_offer_id)}

    rejected = []
    try:
        for doc in list(db[OFFERS].find(query)):
            updated = db[OFFERS].find_one_and_update(
                {"_id": doc['_id'], "status": OfferStatus.PENDING.value},
                {"$set": {"status": OfferStatus.REJECTED.value, "respondedAt": now_iso()}},
                return_document=ReturnDocument.AFTER,
            )
            if updated:
                rejected.append(Offer.from_doc(updated))
    except PyMongoError:
        restore_pending_offers(db, rejected)
        raise
    return rejected


def restore_pending_offers(db, offers):
    if not offers:
        return
    db[OFFERS].update_many(
        {"_id": {"$in": [as_object_id(o.id) for o in offers]}, "status": OfferStatus.REJECTED.value},
        {"$set": {"status": OfferStatus.PENDING.value}, "$unset": {"respondedAt": ""}},
    )


def record_rejections(notifier, request, offers):
    """One offer_rejected notification per donor; all or nothing"""
    recorded = []
    try:
        for offer in offers:
            recorded.append(notifier.record(
                offer.donor_id, rejected_message(request), NotificationType.OFFER_REJECTED, request.id))
    except PyMongoError:
        for notification in recorded:
            notifier.remove(notification)
        raise
    return recorded


def remove_all(notifier, notifications):
    for notification in notifications:
        notifier.remove(notification)


class OfferWorkflow:
    """
    A donor's offer to fulfill a blood request and the owner's answer to it.

    Every operation takes the caller's identity explicitly. Store calls run
    under the caller-supplied timeout; store failures surface as
    PersistenceUnavailable and leave no half-applied transition behind.
    """

    def __init__(self, db, notifier):
        self.db = db
        self.notifier = notifier

    def _load_request(self, request_id):
        doc = self.db[BLOOD_REQUESTS].find_one({"_id": as_object_id(request_id, "Request")})
        if not doc:
            raise RecordNotFound("Request not found")
        return BloodRequest.from_doc(doc)

    def _load_offer(self, offer_id):
        doc = self.db[OFFERS].find_one({"_id": as_object_id(offer_id, "Offer")})
        if not doc:
            raise RecordNotFound("Offer not found")
        return Offer.from_doc(doc)

    def _deliver(self, result):
        for notification in result.notifications:
            result.warnings.extend(self.notifier.deliver(notification))
        return result

    def create_offer(self, caller, request_id, timeout=None):
        try:
            with operation_timeout(timeout):
                request = self._load_request(request_id)
                if request.user_id == caller.user_id:
                    raise SelfDonationError()
                if not request.is_pending:
                    raise RequestNotPending()

                donor_doc = self.db[USERS].find_one({"_id": caller.user_id})
                if not donor_doc:
                    raise RecordNotFound("Donor profile not found")
                donor = Person.from_doc(donor_doc)

                existing = self.db[OFFERS].find_one({
                    "requestId": request.id,
                    "donorId": donor.id,
                    "status": {"$ne": OfferStatus.REJECTED.value},
                })
                if existing:
                    raise DuplicateOfferError()
        except PyMongoError:
            raise PersistenceUnavailable()

        offer = Offer.snapshot(request, donor, now_iso())
        result = WorkflowResult(offer=offer, request=request)

        def insert_offer():
            res = self.db[OFFERS].insert_one(offer.to_doc())
            offer.id = str(res.inserted_id)
            return offer.id

        def delete_offer(offer_id):
            self.db[OFFERS].delete_one({"_id": as_object_id(offer_id)})

        def confirm_request_pending():
            # An accept or cancel may have landed between the check above and the insert
            latest = self._load_request(request.id)
            if not latest.is_pending:
                raise RequestNotPending()

        def notify_owner():
            notification = self.notifier.record(
                request.user_id, match_message(request), NotificationType.REQUEST_MATCH, request.id)
            result.notifications.append(notification)

        result.warnings = run_steps("create_offer", [
            Step("insert_offer", insert_offer, undo=delete_offer),
            Step("confirm_request_pending", confirm_request_pending),
            Step("notify_owner", notify_owner, policy=ISOLATE),
        ], timeout=timeout)

        logger.info("Offer %s created by donor %s for request %s", offer.id, donor.id, request.id)
        return self._deliver(result)

    def respond_to_offer(self, caller, offer_id, decision, timeout=None):
        decision = parse_decision(decision)
        try:
            with operation_timeout(timeout):
                offer = self._load_offer(offer_id)
                if offer.request_user_id != caller.user_id:
                    raise NotRequestOwner()
                request = self._load_request(offer.request_id)
                if offer.status != OfferStatus.PENDING.value:
                    # Auto-rejected because the request was closed by another response or a cancel
                    if (offer.status == OfferStatus.REJECTED.value and not request.is_pending
                            and request.accepted_offer_id != offer.id):
                        raise RequestNotPending()
                    raise OfferNotPending()
        except PyMongoError:
            raise PersistenceUnavailable()

        if decision == Decision.ACCEPT:
            result = self._accept(offer, request, timeout)
        else:
            result = self._reject(offer, request, timeout)
        return self._deliver(result)

    def _claim_offer(self, offer, status):
        doc = self.db[OFFERS].find_one_and_update(
            {"_id": as_object_id(offer.id), "status": OfferStatus.PENDING.value},
            {"$set": {"status": status, "respondedAt": now_iso()}},
            return_document=ReturnDocument.AFTER,
        )
        if not doc:
            raise OfferNotPending()
        return Offer.from_doc(doc)

    def _release_offer(self, offer):
        self.db[OFFERS].update_one(
            {"_id": as_object_id(offer.id), "status": offer.status},
            {"$set": {"status": OfferStatus.PENDING.value}, "$unset": {"respondedAt": ""}},
        )

    def _accept(self, offer, request, timeout):
        result = WorkflowResult(offer=offer, request=request)
        rejected = []

        def claim_request():
            # Single conditional write: of two concurrent accepts only one sees Pending
            doc = self.db[BLOOD_REQUESTS].find_one_and_update(
                {"_id": as_object_id(request.id), "status": RequestStatus.PENDING.value},
                {"$set": {
                    "status": RequestStatus.FULFILLED.value,
                    "acceptedOfferId": offer.id,
                    "fulfilledAt": now_iso(),
                }},
                return_document=ReturnDocument.AFTER,
            )
            if not doc:
                raise RequestNotPending()
            result.request = BloodRequest.from_doc(doc)

        def release_request(_):
            self.db[BLOOD_REQUESTS].update_one(
                {"_id": as_object_id(request.id), "acceptedOfferId": offer.id},
                {"$set": {"status": RequestStatus.PENDING.value},
                 "$unset": {"acceptedOfferId": "", "fulfilledAt": ""}},
            )

        def accept_offer():
            result.offer = self._claim_offer(offer, OfferStatus.ACCEPTED.value)
            return result.offer

        def reject_siblings():
            rejected.extend(reject_pending_offers(self.db, request.id, keep_offer_id=offer.id))
            return rejected

        def record_donation():
            donation = Donation(
                id=None,
                donor_id=offer.donor_id,
                request_id=request.id,
                donor_name=offer.donor_name,
                blood_type=offer.donor_blood_type,
                location=request.location,
                donation_date=now_iso(),
            )
            res = self.db[DONATIONS].insert_one(donation.to_doc())
            result.donation = replace(donation, id=str(res.inserted_id))
            return result.donation

        def delete_donation(donation):
            self.db[DONATIONS].delete_one({"_id": as_object_id(donation.id)})

        def notify_donors():
            accepted = self.notifier.record(
                offer.donor_id, accepted_message(request), NotificationType.OFFER_ACCEPTED, request.id)
            try:
                others = record_rejections(self.notifier, request, rejected)
            except PyMongoError:
                self.notifier.remove(accepted)
                raise
            result.notifications.extend([accepted] + others)
            return list(result.notifications)

        run_steps("accept_offer", [
            Step("claim_request", claim_request, undo=release_request),
            Step("accept_offer", accept_offer, undo=self._release_offer),
            Step("reject_siblings", reject_siblings, undo=lambda offers: restore_pending_offers(self.db, offers)),
            Step("record_donation", record_donation, undo=delete_donation),
            Step("notify_donors", notify_donors, undo=lambda sent: remove_all(self.notifier, sent)),
        ], timeout=timeout)

        logger.info("Offer %s accepted; request %s fulfilled, %d sibling offer(s) rejected",
                    offer.id, request.id, len(rejected))
        return result

    def _reject(self, offer, request, timeout):
        result = WorkflowResult(offer=offer, request=request)

        def reject_offer():
            result.offer = self._claim_offer(offer, OfferStatus.REJECTED.value)
            return result.offer

        def notify_donor():
            notification = self.notifier.record(
                offer.donor_id, rejected_message(request), NotificationType.OFFER_REJECTED, request.id)
            result.notifications.append(notification)
            return notification

        run_steps("reject_offer", [
            Step("reject_offer", reject_offer, undo=self._release_offer),
            Step("notify_donor", notify_donor, undo=self.notifier.remove),
        ], timeout=timeout)

        logger.info("Offer %s rejected by request owner", offer.id)
        return result

    def offers_for_request(self, caller, request_id, timeout=None):
        try:
            with operation_timeout(timeout):
                request = self._load_request(request_id)
                if request.user_id != caller.user_id:
                    raise NotRequestOwner()
                cursor = self.db[OFFERS].find({"requestId": request.id}).sort("matchDate", DESCENDING)
                return [Offer.from_doc(doc) for doc in cursor]
        except PyMongoError:
            raise PersistenceUnavailable()

    def offers_by_donor(self, caller, timeout=None):
        try:
            with operation_timeout(timeout):
                cursor = self.db[OFFERS].find({"donorId": caller.user_id}).sort("matchDate", DESCENDING)
                return [Offer.from_doc(doc) for doc in cursor]
        except PyMongoError:
            raise PersistenceUnavailable()

"""Confirmation email delivery through Resend, with a Mongo-backed outbox.

Purchases never wait on the mail provider: the message is queued first and
delivered best effort, and ``flask deliver-mail`` retries whatever is left.
"""

from contextlib import contextmanager
from datetime import timedelta
from typing import Dict, List, Optional

import resend
from pymongo import ReturnDocument

from errors import MailDeliveryError
from helpers import utcnow


class Mailer:
    def __init__(self, api_key: Optional[str], sender: str, logger):
        self.api_key = (api_key or "").strip()
        self.sender = sender
        self.logger = logger

    @contextmanager
    def transport(self):
        """Install the configured API key for the duration of one delivery.

        The previously configured key is restored whether or not the
        delivery succeeds.
        """
        if not self.api_key:
            raise MailDeliveryError("Resend API key is not configured.")

        previous_api_key = getattr(resend, "api_key", None)
        resend.api_key = self.api_key
        try:
            yield resend.Emails
        finally:
            resend.api_key = previous_api_key

    def send(self, to: str, subject: str, html: str, text: Optional[str] = None) -> Dict[str, object]:
        payload: Dict[str, object] = {
            "from": self.sender,
            "to": [to],
            "subject": subject,
            "html": html,
        }
        if text:
            payload["text"] = text

        with self.transport() as emails:
            try:
                response = emails.send(payload)
            except Exception as exc:
                raise MailDeliveryError(str(exc)) from exc

        if not isinstance(response, dict) or not response.get("id"):
            raise MailDeliveryError(f"Unexpected response from Resend: {response}")

        return {"id": response["id"], "accepted": [to]}


class MailOutbox:
    def __init__(
        self,
        db,
        mailer: Mailer,
        logger,
        max_attempts: int = 5,
        lease: timedelta = timedelta(minutes=5),
    ):
        self.messages = db.mail_outbox
        self.mailer = mailer
        self.logger = logger
        self.max_attempts = max(1, int(max_attempts))
        self.lease = lease

    def enqueue(
        self, to: str, subject: str, html: str, text: str = "", reference=None, claim: bool = False
    ) -> Dict:
        """Queue a message. With ``claim`` the caller holds the delivery lease."""
        now = utcnow()
        entry = {
            "to": to,
            "subject": subject,
            "html": html,
            "text": text,
            "reference": reference,
            "status": "sending" if claim else "pending",
            "lease_expires_at": now + self.lease if claim else None,
            "attempts": 0,
            "last_error": None,
            "receipt": None,
            "created_at": now,
            "updated_at": now,
        }
        insert_result = self.messages.insert_one(entry)
        entry["_id"] = insert_result.inserted_id
        return entry

    def deliver(self, entry: Dict) -> Dict[str, object]:
        """Attempt one delivery of a queued entry and record the outcome."""
        attempts = int(entry.get("attempts") or 0) + 1
        try:
            receipt = self.mailer.send(
                entry["to"], entry["subject"], entry["html"], entry.get("text")
            )
        except MailDeliveryError as exc:
            status = "failed" if attempts >= self.max_attempts else "pending"
            self.messages.update_one(
                {"_id": entry["_id"]},
                {
                    "$set": {
                        "status": status,
                        "attempts": attempts,
                        "lease_expires_at": None,
                        "last_error": exc.message,
                        "updated_at": utcnow(),
                    }
                },
            )
            self.logger.warning(
                "Email %s to %s not delivered (attempt %s/%s): %s",
                entry["_id"],
                entry["to"],
                attempts,
                self.max_attempts,
                exc.message,
            )
            return {
                "sent": False,
                "queued": status == "pending",
                "outboxId": str(entry["_id"]),
                "error": exc.message,
            }

        self.messages.update_one(
            {"_id": entry["_id"]},
            {
                "$set": {
                    "status": "sent",
                    "attempts": attempts,
                    "lease_expires_at": None,
                    "last_error": None,
                    "receipt": receipt,
                    "updated_at": utcnow(),
                }
            },
        )
        return {"sent": True, "outboxId": str(entry["_id"]), **receipt}

    def claim_next(self, skip_ids=()) -> Optional[Dict]:
        """Lease the oldest deliverable entry so no other worker sends it.

        Entries stuck in ``sending`` past their lease (a worker died mid
        delivery) become claimable again.
        """
        now = utcnow()
        return self.messages.find_one_and_update(
            {
                "_id": {"$nin": list(skip_ids)},
                "$or": [
                    {"status": "pending"},
                    {"status": "sending", "lease_expires_at": {"$lt": now}},
                ],
            },
            {
                "$set": {
                    "status": "sending",
                    "lease_expires_at": now + self.lease,
                    "updated_at": now,
                }
            },
            sort=[("updated_at", 1)],
            return_document=ReturnDocument.AFTER,
        )

    def deliver_pending(self, limit: int = 50) -> List[Dict[str, object]]:
        outcomes = []
        attempted = []
        for _ in range(max(0, limit)):
            entry = self.claim_next(attempted)
            if not entry:
                break
            attempted.append(entry["_id"])
            outcomes.append(self.deliver(entry))
        return outcomes

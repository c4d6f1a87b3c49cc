"""Purchase orchestration.

A purchase touches several documents (products, the transaction, the buyer)
and MongoDB only guarantees atomicity per document. Every mutation is
therefore recorded as a step on a ``purchase_intents`` document before it
is applied. On failure the recorded steps are undone in reverse order; an
intent left ``pending`` by a crash is undone later by ``recover_stale``.
"""

from datetime import timedelta
from typing import Dict, List, Optional, Tuple

from bson import ObjectId
from flask import render_template

from accounts import AccountStore, is_admin
from catalog import CatalogStore, LineItem, aggregate_quantities, serialize_product
from errors import Forbidden, InsufficientStock, NotFound, StoreError, ValidationError
from helpers import (
    isoformat_datetime,
    normalize_email,
    parse_object_id,
    safe_float,
    utcnow,
)
from mailer import MailOutbox

CONFIRMATION_SUBJECT = "Your order confirmation"

STEP_RESERVE_STOCK = "reserve_stock"
STEP_INSERT_TRANSACTION = "insert_transaction"
STEP_ATTACH_BUYER = "attach_buyer"


def serialize_transaction(transaction_document, products: Optional[Dict] = None):
    """Render a transaction for the API.

    When ``products`` is given, each ``productId`` is expanded into the
    current catalog record (or None if the product is gone).
    """
    if not transaction_document:
        return None

    line_items = []
    for entry in transaction_document.get("products") or []:
        product_id = entry.get("product_id")
        if products is not None:
            product_value = serialize_product(products.get(product_id))
        else:
            product_value = str(product_id)
        line_items.append({"productId": product_value, "qtt": int(entry.get("qtt") or 0)})

    return {
        "_id": str(transaction_document.get("_id")),
        "buyerId": str(transaction_document.get("buyer_id")),
        "products": line_items,
        "timestamp": isoformat_datetime(transaction_document.get("timestamp")),
    }


class PurchaseOrchestrator:
    def __init__(
        self,
        db,
        catalog: CatalogStore,
        accounts: AccountStore,
        outbox: MailOutbox,
        logger,
    ):
        self.transactions = db.transactions
        self.intents = db.purchase_intents
        self.audit_logs = db.audit_logs
        self.catalog = catalog
        self.accounts = accounts
        self.outbox = outbox
        self.logger = logger

    # --- buyer resolution ---

    def resolve_buyer(self, current_user: Dict, requested_buyer_id) -> Dict:
        if requested_buyer_id in (None, ""):
            return current_user

        buyer_id = parse_object_id(requested_buyer_id)
        if buyer_id is None:
            raise ValidationError("Invalid buyer identifier.", buyer_id=str(requested_buyer_id))
        if buyer_id == current_user.get("_id"):
            return current_user
        if not is_admin(current_user):
            raise Forbidden("You can only record purchases for your own account.")
        return self.accounts.get_user(buyer_id)

    # --- submission ---

    def submit(self, buyer: Dict, line_items: List[LineItem]) -> Tuple[Dict, Dict[str, object]]:
        quantities = aggregate_quantities(line_items)
        products = self.catalog.find_products(quantities.keys())
        missing = [str(product_id) for product_id in quantities if product_id not in products]
        if missing:
            raise NotFound("Product not found.", product_ids=missing)

        transaction_document = {
            "_id": ObjectId(),
            "buyer_id": buyer["_id"],
            "products": [{"product_id": item.product_id, "qtt": item.qtt} for item in line_items],
            "timestamp": utcnow(),
        }
        intent_id = self._open_intent(transaction_document)

        try:
            reserved = self._reserve_all(intent_id, transaction_document["_id"], quantities)
            self._record_step(intent_id, {"action": STEP_INSERT_TRANSACTION})
            self.transactions.insert_one(transaction_document)
            self._record_step(intent_id, {"action": STEP_ATTACH_BUYER, "user_id": buyer["_id"]})
            self.accounts.attach_transaction(buyer["_id"], transaction_document["_id"])
            self._close_intent(intent_id, "committed")
        except Exception as exc:
            self._abort(intent_id, exc)
            raise

        self.logger.info(
            "Recorded transaction %s for buyer %s (%s line items)",
            transaction_document["_id"],
            buyer["_id"],
            len(line_items),
        )
        self.record_audit_log(
            buyer.get("email"),
            "Recorded purchase transaction",
            {
                "transaction_id": transaction_document["_id"],
                "items": len(line_items),
            },
        )

        try:
            email_response = self.send_confirmation(buyer, transaction_document, reserved)
        except Exception as exc:
            self.logger.warning(
                "Confirmation email for transaction %s not queued: %s",
                transaction_document["_id"],
                exc,
            )
            email_response = {
                "sent": False,
                "queued": False,
                "error": "Confirmation email could not be queued.",
            }
        return transaction_document, email_response

    def _reserve_all(self, intent_id, transaction_id, quantities: Dict[ObjectId, int]):
        reserved: Dict[ObjectId, Dict] = {}
        for product_id, quantity in quantities.items():
            self._record_step(
                intent_id,
                {"action": STEP_RESERVE_STOCK, "product_id": product_id, "qtt": quantity},
            )
            updated = self.catalog.reserve_stock(product_id, quantity, transaction_id)
            if updated is None:
                raise InsufficientStock(
                    product_id=str(product_id),
                    requested=quantity,
                    available=self.catalog.stock_level(product_id),
                )
            reserved[product_id] = updated
        return reserved

    # --- intent log ---

    def _open_intent(self, transaction_document: Dict) -> ObjectId:
        now = utcnow()
        insert_result = self.intents.insert_one(
            {
                "transaction_id": transaction_document["_id"],
                "buyer_id": transaction_document["buyer_id"],
                "products": transaction_document["products"],
                "status": "pending",
                "steps": [],
                "error": None,
                "created_at": now,
                "updated_at": now,
            }
        )
        return insert_result.inserted_id

    def _record_step(self, intent_id: ObjectId, step: Dict) -> None:
        self.intents.update_one(
            {"_id": intent_id},
            {
                "$push": {"steps": step},
                "$set": {"updated_at": utcnow()},
            },
        )

    def _close_intent(self, intent_id: ObjectId, status: str, error: Optional[str] = None) -> None:
        self.intents.update_one(
            {"_id": intent_id},
            {
                "$set": {
                    "status": status,
                    "error": error,
                    "updated_at": utcnow(),
                }
            },
        )

    def _abort(self, intent_id: ObjectId, exc: Exception) -> None:
        reason = exc.message if isinstance(exc, StoreError) else repr(exc)
        if not isinstance(exc, StoreError):
            self.logger.exception("Purchase %s failed, rolling back", intent_id)
        intent = self.intents.find_one({"_id": intent_id})
        try:
            self.compensate(intent)
        except Exception:
            # Leave the intent pending; recover_stale will retry the rollback.
            self.logger.exception("Rollback of purchase intent %s failed", intent_id)
            return
        self._close_intent(intent_id, "rolled_back", reason)

    def compensate(self, intent: Dict) -> None:
        """Undo the recorded steps of an intent, most recent first.

        Steps are written before they are applied, so every undo must be a
        no-op when its step never took effect.
        """
        transaction_id = intent["transaction_id"]
        for step in reversed(intent.get("steps") or []):
            action = step.get("action")
            if action == STEP_ATTACH_BUYER:
                self.accounts.detach_transaction(step["user_id"], transaction_id)
            elif action == STEP_INSERT_TRANSACTION:
                self.transactions.delete_one({"_id": transaction_id})
            elif action == STEP_RESERVE_STOCK:
                self.catalog.release_stock(step["product_id"], step["qtt"], transaction_id)

    def recover_stale(self, older_than: timedelta) -> List[ObjectId]:
        """Roll back intents still pending after ``older_than``.

        The cutoff must exceed the longest a live purchase can take, otherwise
        a slow request still in flight gets rolled back underneath.
        An intent whose rollback fails stays pending for the next run.
        """
        cutoff = utcnow() - older_than
        recovered = []
        for intent in list(
            self.intents.find({"status": "pending", "created_at": {"$lt": cutoff}})
        ):
            try:
                self.compensate(intent)
            except Exception:
                self.logger.exception("Recovery of purchase intent %s failed", intent["_id"])
                continue
            self._close_intent(intent["_id"], "rolled_back", "Recovered stale purchase intent.")
            self.logger.warning(
                "Rolled back stale purchase intent %s (transaction %s)",
                intent["_id"],
                intent["transaction_id"],
            )
            recovered.append(intent["_id"])
        return recovered

    # --- confirmation email ---

    def build_confirmation(self, transaction_document: Dict, products: Dict[ObjectId, Dict]):
        items = []
        for entry in transaction_document["products"]:
            product_document = products.get(entry["product_id"]) or {}
            price_value = round(safe_float(product_document.get("price"), 0.0), 2)
            items.append(
                {
                    "model": product_document.get("model") or "Item",
                    "brand": product_document.get("brand") or "",
                    "price": price_value,
                    "qtt": entry["qtt"],
                    "line_total": round(price_value * entry["qtt"], 2),
                }
            )
        total_value = round(sum(item["line_total"] for item in items), 2)

        html_body = render_template(
            "emails/purchase_confirmation.html",
            transaction_id=str(transaction_document["_id"]),
            items=items,
            total=total_value,
            created_at=transaction_document["timestamp"],
        )
        item_lines = ", ".join(
            f"{item['model']} x{item['qtt']} ({item['price']:.2f})" for item in items
        )
        text_body = (
            "Your purchase was received. We're waiting for payment confirmation.\n"
            f"Gadgets you bought: {item_lines}.\n"
            f"Total: {total_value:.2f}."
        )
        return html_body, text_body

    def send_confirmation(self, buyer: Dict, transaction_document: Dict, products: Dict):
        recipient = normalize_email(buyer.get("email"))
        if not recipient:
            return {"sent": False, "queued": False, "error": "Buyer has no email address."}

        html_body, text_body = self.build_confirmation(transaction_document, products)
        entry = self.outbox.enqueue(
            recipient,
            CONFIRMATION_SUBJECT,
            html_body,
            text_body,
            reference=transaction_document["_id"],
            claim=True,
        )
        return self.outbox.deliver(entry)

    # --- retrieval ---

    def get_transaction(self, transaction_id) -> Dict:
        object_id = parse_object_id(transaction_id)
        transaction_document = (
            self.transactions.find_one({"_id": object_id}) if object_id else None
        )
        if not transaction_document:
            raise NotFound("Transaction not found.")

        products = self.catalog.find_products(
            entry.get("product_id") for entry in transaction_document.get("products") or []
        )
        return serialize_transaction(transaction_document, products)

    def list_transactions(self, buyer: Dict) -> List[Dict]:
        cursor = self.transactions.find({"buyer_id": buyer["_id"]}).sort(
            [("timestamp", -1), ("_id", -1)]
        )
        return [serialize_transaction(document) for document in cursor]

    # --- audit trail ---

    def record_audit_log(self, actor_email: Optional[str], action: str, metadata: Optional[Dict] = None):
        try:
            self.audit_logs.insert_one(
                {
                    "user_email": normalize_email(actor_email) or None,
                    "action": action,
                    "metadata": {
                        str(key): str(value)
                        for key, value in (metadata or {}).items()
                        if value is not None
                    },
                    "created_at": utcnow(),
                }
            )
        except Exception as exc:
            self.logger.warning("Unable to record audit log: %s", exc)

import threading
from datetime import timedelta

import pytest
from bson import ObjectId

from catalog import MAX_LINE_ITEM_QUANTITY, parse_line_items
from errors import ValidationError
from helpers import utcnow


def test_purchase_deducts_stock_and_records_transaction(
    purchase, db, consumer_id, make_product, sent_emails
):
    product_id = make_product(qtt_in_stock=5)

    response = purchase((product_id, 3), buyer_id=consumer_id)

    assert response.status_code == 201
    body = response.get_json()
    result = body["result"]
    assert result["buyerId"] == str(consumer_id)
    assert result["products"] == [{"productId": str(product_id), "qtt": 3}]
    transaction_id = ObjectId(result["_id"])

    product = db.products.find_one({"_id": product_id})
    assert product["qtt_in_stock"] == 2
    assert product["transactions"] == [transaction_id]

    assert db.transactions.count_documents({}) == 1
    buyer = db.users.find_one({"_id": consumer_id})
    assert buyer["transactions"] == [transaction_id]

    intent = db.purchase_intents.find_one({"transaction_id": transaction_id})
    assert intent["status"] == "committed"

    assert len(sent_emails) == 1
    payload = sent_emails[0]["payload"]
    assert payload["to"] == ["consumer@example.com"]
    assert payload["subject"] == "Your order confirmation"
    assert "Galaxy S21" in payload["html"]
    assert "199.99" in payload["html"]
    assert body["emailResponse"]["sent"] is True
    assert body["emailResponse"]["id"] == "email-1"


def test_buyer_defaults_to_current_user(purchase, db, consumer_id, make_product):
    product_id = make_product()

    response = purchase((product_id, 1))

    assert response.status_code == 201
    assert response.get_json()["result"]["buyerId"] == str(consumer_id)


def test_multi_product_purchase_keeps_line_item_order(purchase, db, make_product):
    phone = make_product(model="Pixel 7a", qtt_in_stock=3)
    laptop = make_product(model="ThinkPad X1", price=899.0, qtt_in_stock=2)

    response = purchase((laptop, 2), (phone, 1))

    assert response.status_code == 201
    assert [entry["productId"] for entry in response.get_json()["result"]["products"]] == [
        str(laptop),
        str(phone),
    ]
    assert db.products.find_one({"_id": phone})["qtt_in_stock"] == 2
    assert db.products.find_one({"_id": laptop})["qtt_in_stock"] == 0


def test_insufficient_stock_leaves_catalog_untouched(purchase, db, make_product, sent_emails):
    plenty = make_product(qtt_in_stock=5)
    scarce = make_product(model="Pixel Fold", qtt_in_stock=1)

    response = purchase((plenty, 2), (scarce, 3))

    assert response.status_code == 403
    body = response.get_json()
    assert body["error"] == "insufficient_stock"
    assert body["msg"] == "Not enough quantity in stock"

    assert db.products.find_one({"_id": plenty})["qtt_in_stock"] == 5
    assert db.products.find_one({"_id": plenty})["transactions"] == []
    assert db.products.find_one({"_id": scarce})["qtt_in_stock"] == 1
    assert db.transactions.count_documents({}) == 0
    assert db.purchase_intents.find_one()["status"] == "rolled_back"
    assert sent_emails == []


def test_competing_purchases_cannot_oversell(purchase, db, make_product):
    product_id = make_product(qtt_in_stock=5)

    first = purchase((product_id, 3))
    second = purchase((product_id, 3))

    assert first.status_code == 201
    assert second.status_code == 403
    assert db.products.find_one({"_id": product_id})["qtt_in_stock"] == 2
    assert db.transactions.count_documents({}) == 1


def test_concurrent_purchases_cannot_oversell(app, db, consumer_headers, make_product, sent_emails):
    product_id = make_product(qtt_in_stock=5)
    body = {"products": [{"productId": str(product_id), "qtt": 3}]}
    start = threading.Barrier(4)
    statuses = []

    def buy():
        client = app.test_client()
        start.wait(timeout=10)
        statuses.append(client.post("/transaction", json=body, headers=consumer_headers).status_code)

    buyers = [threading.Thread(target=buy) for _ in range(4)]
    for buyer in buyers:
        buyer.start()
    for buyer in buyers:
        buyer.join(timeout=30)

    assert sorted(statuses) == [201, 403, 403, 403]
    product = db.products.find_one({"_id": product_id})
    assert product["qtt_in_stock"] == 2
    assert len(product["transactions"]) == 1
    assert db.transactions.count_documents({}) == 1


def test_repeated_product_entries_are_checked_together(purchase, db, make_product):
    product_id = make_product(qtt_in_stock=4)

    rejected = purchase((product_id, 2), (product_id, 3))
    accepted = purchase((product_id, 2), (product_id, 2))

    assert rejected.status_code == 403
    assert accepted.status_code == 201
    assert len(accepted.get_json()["result"]["products"]) == 2
    product = db.products.find_one({"_id": product_id})
    assert product["qtt_in_stock"] == 0
    assert len(product["transactions"]) == 1


def test_failure_after_reservation_rolls_back(purchase, db, services, make_product, monkeypatch):
    product_id = make_product(qtt_in_stock=5)

    def broken_attach(user_id, transaction_id):
        raise RuntimeError("users collection unavailable")

    monkeypatch.setattr(services["accounts"], "attach_transaction", broken_attach)

    response = purchase((product_id, 3))

    assert response.status_code == 500
    assert response.get_json()["error"] == "internal"
    product = db.products.find_one({"_id": product_id})
    assert product["qtt_in_stock"] == 5
    assert product["transactions"] == []
    assert db.transactions.count_documents({}) == 0
    intent = db.purchase_intents.find_one()
    assert intent["status"] == "rolled_back"
    assert "users collection unavailable" in intent["error"]


def test_mail_failure_does_not_fail_purchase(purchase, db, make_product, failing_mail):
    product_id = make_product(qtt_in_stock=5)

    response = purchase((product_id, 1))

    assert response.status_code == 201
    email_response = response.get_json()["emailResponse"]
    assert email_response["sent"] is False
    assert email_response["queued"] is True
    assert "provider down" in email_response["error"]
    assert db.products.find_one({"_id": product_id})["qtt_in_stock"] == 4

    entry = db.mail_outbox.find_one()
    assert entry["status"] == "pending"
    assert entry["attempts"] == 1
    assert len(failing_mail) == 1


def test_consumer_cannot_buy_for_another_account(purchase, db, make_product, other_consumer_id):
    product_id = make_product()

    response = purchase((product_id, 1), buyer_id=other_consumer_id)

    assert response.status_code == 403
    assert response.get_json()["error"] == "forbidden"
    assert db.products.find_one({"_id": product_id})["qtt_in_stock"] == 5


def test_consumer_with_malformed_buyer_id_is_rejected(purchase, db, make_product):
    product_id = make_product()

    response = purchase((product_id, 1), buyer_id="not-a-user")

    assert response.status_code == 400
    assert response.get_json()["error"] == "validation_error"
    assert db.purchase_intents.count_documents({}) == 0


def test_admin_can_buy_on_behalf_of_a_customer(
    purchase, db, admin_headers, other_consumer_id, make_product, sent_emails
):
    product_id = make_product()

    response = purchase((product_id, 2), headers=admin_headers, buyer_id=other_consumer_id)

    assert response.status_code == 201
    assert response.get_json()["result"]["buyerId"] == str(other_consumer_id)
    assert len(db.users.find_one({"_id": other_consumer_id})["transactions"]) == 1
    assert sent_emails[0]["payload"]["to"] == ["other@example.com"]


def test_admin_purchase_for_unknown_buyer_is_not_found(purchase, admin_headers, make_product):
    product_id = make_product()

    response = purchase((product_id, 1), headers=admin_headers, buyer_id=ObjectId())

    assert response.status_code == 404


@pytest.mark.parametrize(
    "products",
    [
        [],
        None,
        ["not-an-object"],
        [{"productId": "nope", "qtt": 1}],
        [{"productId": str(ObjectId()), "qtt": 0}],
        [{"productId": str(ObjectId()), "qtt": -2}],
        [{"productId": str(ObjectId()), "qtt": 1.5}],
        [{"productId": str(ObjectId()), "qtt": "many"}],
        [{"productId": str(ObjectId()), "qtt": True}],
        [{"productId": str(ObjectId()), "qtt": 9007199254740993}],
        [{"productId": str(ObjectId()), "qtt": 2**64}],
    ],
)
def test_invalid_purchase_payloads_are_rejected(client, consumer_headers, db, products):
    response = client.post("/transaction", json={"products": products}, headers=consumer_headers)

    assert response.status_code == 400
    assert response.get_json()["error"] == "validation_error"
    assert db.purchase_intents.count_documents({}) == 0


def test_quantities_keep_their_exact_value():
    product_id = ObjectId()

    items = parse_line_items(
        [
            {"productId": str(product_id), "qtt": MAX_LINE_ITEM_QUANTITY},
            {"productId": str(product_id), "qtt": " 3 "},
            {"productId": str(product_id), "qtt": 2.0},
        ]
    )

    assert [item.qtt for item in items] == [MAX_LINE_ITEM_QUANTITY, 3, 2]
    with pytest.raises(ValidationError):
        parse_line_items([{"productId": str(product_id), "qtt": MAX_LINE_ITEM_QUANTITY + 1}])


def test_unknown_product_is_not_found(purchase, db):
    response = purchase((ObjectId(), 1))

    assert response.status_code == 404
    assert response.get_json()["error"] == "not_found"
    assert db.purchase_intents.count_documents({}) == 0


def test_purchase_requires_token(client, make_product):
    product_id = make_product()

    response = client.post(
        "/transaction", json={"products": [{"productId": str(product_id), "qtt": 1}]}
    )

    assert response.status_code == 401


def test_token_for_removed_account_is_rejected(purchase, db, consumer_id, make_product):
    product_id = make_product()
    db.users.delete_one({"_id": consumer_id})

    response = purchase((product_id, 1))

    assert response.status_code == 400
    assert response.get_json()["msg"] == "User does not exist."


def test_interrupted_purchase_is_recovered_by_cli(app, purchase, db, services, make_product, monkeypatch):
    product_id = make_product(qtt_in_stock=5)
    orchestrator = services["purchases"]

    def broken_attach(user_id, transaction_id):
        raise RuntimeError("primary stepped down")

    def broken_compensate(intent):
        raise RuntimeError("still no primary")

    monkeypatch.setattr(services["accounts"], "attach_transaction", broken_attach)
    monkeypatch.setattr(orchestrator, "compensate", broken_compensate)

    assert purchase((product_id, 3)).status_code == 500
    assert db.products.find_one({"_id": product_id})["qtt_in_stock"] == 2
    intent = db.purchase_intents.find_one()
    assert intent["status"] == "pending"

    monkeypatch.undo()
    db.purchase_intents.update_one(
        {"_id": intent["_id"]}, {"$set": {"created_at": utcnow() - timedelta(hours=1)}}
    )

    result = app.test_cli_runner().invoke(args=["recover-purchases", "--older-than", "5"])

    assert "Rolled back 1 stale purchase intents." in result.output
    product = db.products.find_one({"_id": product_id})
    assert product["qtt_in_stock"] == 5
    assert product["transactions"] == []
    assert db.transactions.count_documents({}) == 0
    assert db.purchase_intents.find_one()["status"] == "rolled_back"


def test_recent_pending_intents_are_left_alone(services, db):
    db.purchase_intents.insert_one(
        {
            "transaction_id": ObjectId(),
            "buyer_id": ObjectId(),
            "products": [],
            "status": "pending",
            "steps": [],
            "created_at": utcnow(),
            "updated_at": utcnow(),
        }
    )

    recovered = services["purchases"].recover_stale(timedelta(minutes=10))

    assert recovered == []
    assert db.purchase_intents.find_one()["status"] == "pending"


def test_recovery_continues_past_a_failing_intent(services, db, monkeypatch):
    stale = utcnow() - timedelta(hours=1)
    broken_id, healthy_id = [
        db.purchase_intents.insert_one(
            {
                "transaction_id": ObjectId(),
                "buyer_id": ObjectId(),
                "products": [],
                "status": "pending",
                "steps": [],
                "created_at": stale,
                "updated_at": stale,
            }
        ).inserted_id
        for _ in range(2)
    ]
    orchestrator = services["purchases"]
    compensate = orchestrator.compensate

    def flaky_compensate(intent):
        if intent["_id"] == broken_id:
            raise RuntimeError("still no primary")
        compensate(intent)

    monkeypatch.setattr(orchestrator, "compensate", flaky_compensate)

    recovered = orchestrator.recover_stale(timedelta(minutes=10))

    assert recovered == [healthy_id]
    assert db.purchase_intents.find_one({"_id": broken_id})["status"] == "pending"
    assert db.purchase_intents.find_one({"_id": healthy_id})["status"] == "rolled_back"

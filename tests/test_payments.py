from bson import ObjectId

from backend.checkout import STATUS_COMPLETE


def seed_cart(store, email, product_id, count=1):
    result = store.selections.insert_many(
        [{"email": email, "ProductItemId": str(product_id)} for _ in range(count)]
    )
    return [str(selection_id) for selection_id in result.inserted_ids]


def seed_product(store, available=5):
    return store.products.insert_one({"name": "Lamp", "price": 20, "available": available}).inserted_id


def payment_body(**overrides):
    body = {"email": "ana@example.com", "transactionId": "pi_123", "price": 20}
    body.update(overrides)
    return body


def test_payment_settles_exactly_the_listed_cart_items(client, store, auth_headers):
    product_id = seed_product(store)
    paid = seed_cart(store, "ana@example.com", product_id, count=2)
    kept = seed_cart(store, "ana@example.com", product_id)

    response = client.post(
        "/payments",
        json=payment_body(cartItems=paid),
        headers=auth_headers("ana@example.com"),
    )

    assert response.status_code == 200
    payload = response.get_json()
    assert payload["deleteResult"] == {"deletedCount": 2}
    assert store.payments.count_documents({}) == 1
    remaining = [str(doc["_id"]) for doc in store.selections.find()]
    assert remaining == kept
    payment = store.payments.find_one({})
    assert str(payment["_id"]) == payload["result"]["insertedId"]
    assert payment["cartItems"] == paid
    assert payment["transactionId"] == "pi_123"


def test_single_selected_payment_decrements_its_product_once(client, store, auth_headers):
    product_id = seed_product(store, available=5)
    other_id = seed_product(store, available=5)
    [selection_id] = seed_cart(store, "ana@example.com", product_id)

    response = client.post(
        "/payments",
        json=payment_body(
            selectedPayment={"_id": selection_id, "ProductItemId": str(product_id)}
        ),
        headers=auth_headers("ana@example.com"),
    )

    assert response.get_json()["updateResult"] == {"modifiedCount": 1}
    assert store.products.find_one({"_id": product_id})["available"] == 4
    assert store.products.find_one({"_id": other_id})["available"] == 5
    assert store.selections.count_documents({}) == 0


def test_selected_payment_product_is_used_when_cart_line_is_gone(client, store, auth_headers):
    product_id = seed_product(store, available=2)

    client.post(
        "/payments",
        json=payment_body(
            selectedPayment={"_id": str(ObjectId()), "ProductItemId": str(product_id)}
        ),
        headers=auth_headers("ana@example.com"),
    )

    assert store.products.find_one({"_id": product_id})["available"] == 1
    assert store.payments.count_documents({}) == 1


def test_any_authenticated_caller_may_record_a_payment(client, store, auth_headers):
    response = client.post(
        "/payments",
        json=payment_body(email="someone-else@example.com"),
        headers=auth_headers("ana@example.com"),
    )

    assert response.status_code == 200
    assert store.payments.count_documents({"email": "someone-else@example.com"}) == 1


def test_checkout_intent_is_marked_complete(client, store, auth_headers):
    client.post("/payments", json=payment_body(), headers=auth_headers("ana@example.com"))

    intent = store.checkout_intents.find_one({})
    assert intent["status"] == STATUS_COMPLETE
    assert "payment" in intent["completed_steps"]
    assert "selections" in intent["completed_steps"]


def test_payment_missing_required_fields(client, store, auth_headers):
    response = client.post(
        "/payments", json={"email": "ana@example.com"}, headers=auth_headers("ana@example.com")
    )

    assert response.status_code == 400
    assert response.get_json()["message"] == "Invalid request body."
    assert store.payments.count_documents({}) == 0


def test_payment_with_malformed_cart_item(client, store, auth_headers):
    response = client.post(
        "/payments",
        json=payment_body(cartItems=["oops"]),
        headers=auth_headers("ana@example.com"),
    )

    assert response.status_code == 400
    assert store.payments.count_documents({}) == 0
    assert store.checkout_intents.count_documents({}) == 0


def test_payments_are_listed_newest_first(client, store, auth_headers):
    headers = auth_headers("ana@example.com")
    for transaction in ("pi_1", "pi_2", "pi_3"):
        client.post("/payments", json=payment_body(transactionId=transaction), headers=headers)
    client.post(
        "/payments",
        json=payment_body(email="bo@example.com", transactionId="pi_bo"),
        headers=headers,
    )

    response = client.get("/payments?email=ana@example.com")

    assert [p["transactionId"] for p in response.get_json()] == ["pi_3", "pi_2", "pi_1"]


def test_payments_without_email_or_matches_are_empty(client, store, auth_headers):
    client.post("/payments", json=payment_body(), headers=auth_headers("ana@example.com"))

    assert client.get("/payments").get_json() == []
    assert client.get("/payments?email=nobody@example.com").get_json() == []


def test_payment_intent_returns_client_secret(client, processor, auth_headers):
    response = client.post(
        "/create-payment-intent", json={"price": 12.5}, headers=auth_headers("ana@example.com")
    )

    assert response.status_code == 200
    assert response.get_json() == {"clientSecret": "pi_test_secret_1"}
    assert processor.charges == [12.5]


def test_payment_intent_requires_price(client, processor, auth_headers):
    response = client.post(
        "/create-payment-intent", json={}, headers=auth_headers("ana@example.com")
    )

    assert response.status_code == 400
    assert processor.charges == []


def test_payment_intent_processor_failure(client, processor, auth_headers):
    processor.fail = True

    response = client.post(
        "/create-payment-intent", json={"price": 3}, headers=auth_headers("ana@example.com")
    )

    assert response.status_code == 502
    assert response.get_json() == {
        "error": True,
        "message": "Payment processor request failed.",
    }

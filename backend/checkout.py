"""
Checkout finalization

Recording a payment touches three collections: the payment is inserted, the
settled cart lines are removed and every purchased product loses one unit of
availability. The plan for all of it is written to ``checkoutIntent`` first,
then each step is applied idempotently and ticked off on the intent. An
intent still pending after a crash is rolled forward by
``reconcile_checkouts``, so a checkout ends up either fully applied or not
started at all.
"""

from datetime import datetime, timedelta
from typing import Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo.errors import PyMongoError

from .schemas import PaymentCreate
from .store import Store, parse_object_id

STATUS_PENDING = "pending"
STATUS_COMPLETE = "complete"

PAYMENT_STEP = "payment"
SELECTIONS_STEP = "selections"


def product_step(index: int) -> str:
    return f"product:{index}"


def build_checkout_plan(
    store: Store, payment: PaymentCreate, logger
) -> Tuple[Optional[Dict[str, object]], Optional[str]]:
    selection_ids: List[ObjectId] = []
    for raw_identifier in payment.settled_selection_ids():
        selection_id = parse_object_id(raw_identifier)
        if selection_id is None:
            return None, f"Invalid cart item identifier: {raw_identifier}"
        selection_ids.append(selection_id)

    fallback_selection_id = None
    fallback_product_id = None
    selected = payment.selected_payment
    if selected is not None:
        if selected.id:
            fallback_selection_id = parse_object_id(selected.id)
        if selected.product_item_id:
            fallback_product_id = parse_object_id(selected.product_item_id)
            if fallback_product_id is None:
                return None, f"Invalid product identifier: {selected.product_item_id}"

    stored_selections = {
        document["_id"]: document
        for document in store.selections.find({"_id": {"$in": selection_ids}})
    }

    product_ids: List[ObjectId] = []
    for selection_id in selection_ids:
        selection = stored_selections.get(selection_id)
        product_id = None
        if selection is None:
            logger.warning("Checkout settles unknown cart item %s", selection_id)
        else:
            product_id = parse_object_id(selection.get("ProductItemId"))
        if product_id is None and selection_id == fallback_selection_id:
            product_id = fallback_product_id
        if product_id is not None:
            product_ids.append(product_id)

    payment_document = payment.to_document()
    payment_document.setdefault("created_at", datetime.utcnow())

    plan = {
        "_id": ObjectId(),
        "payment_id": ObjectId(),
        "payment": payment_document,
        "selection_ids": selection_ids,
        "product_ids": product_ids,
        "status": STATUS_PENDING,
        "completed_steps": [],
        "created_at": datetime.utcnow(),
    }
    return plan, None


def mark_step(store: Store, intent_id: ObjectId, step: str):
    store.checkout_intents.update_one(
        {"_id": intent_id}, {"$addToSet": {"completed_steps": step}}
    )


def apply_checkout(store: Store, intent: Dict[str, object]) -> Dict[str, object]:
    """Run every step of ``intent`` that has not completed yet."""
    intent_id = intent["_id"]
    payment_id = intent["payment_id"]
    completed = set(intent.get("completed_steps") or [])
    summary = {"insertedId": payment_id, "deletedCount": 0, "modifiedCount": 0}

    if PAYMENT_STEP not in completed:
        store.payments.update_one(
            {"_id": payment_id}, {"$setOnInsert": intent["payment"]}, upsert=True
        )
        mark_step(store, intent_id, PAYMENT_STEP)

    selection_ids = intent.get("selection_ids") or []
    if SELECTIONS_STEP not in completed:
        if selection_ids:
            result = store.selections.delete_many({"_id": {"$in": selection_ids}})
            summary["deletedCount"] = result.deleted_count
        mark_step(store, intent_id, SELECTIONS_STEP)

    for index, product_id in enumerate(intent.get("product_ids") or []):
        step = product_step(index)
        if step in completed:
            continue
        # The marker on the product makes the decrement apply at most once per line.
        marker = f"{intent_id}:{step}"
        result = store.products.update_one(
            {"_id": product_id, "appliedCheckouts": {"$ne": marker}},
            {"$inc": {"available": -1}, "$addToSet": {"appliedCheckouts": marker}},
        )
        summary["modifiedCount"] += result.modified_count
        mark_step(store, intent_id, step)

    store.checkout_intents.update_one(
        {"_id": intent_id},
        {"$set": {"status": STATUS_COMPLETE, "completed_at": datetime.utcnow()}},
    )
    return summary


def finalize_checkout(store: Store, plan: Dict[str, object]) -> Dict[str, object]:
    store.checkout_intents.insert_one(plan)
    return apply_checkout(store, plan)


def reconcile_checkouts(store: Store, grace_seconds: int, logger) -> int:
    cutoff = datetime.utcnow() - timedelta(seconds=grace_seconds)
    recovered = 0
    for intent in store.checkout_intents.find(
        {"status": STATUS_PENDING, "created_at": {"$lte": cutoff}}
    ):
        try:
            apply_checkout(store, intent)
        except PyMongoError as exc:
            logger.error("Unable to recover checkout %s: %s", intent["_id"], exc)
            continue
        logger.info(
            "Recovered checkout %s for payment %s", intent["_id"], intent["payment_id"]
        )
        recovered += 1
    return recovered

from datetime import datetime
from typing import Dict, Optional

from bson import ObjectId
from bson.errors import InvalidId
from flask import Flask
from flask_pymongo import PyMongo

USERS_COLLECTION = "users"
PRODUCT_COLLECTION = "product"
SELECTION_COLLECTION = "selectProduct"
PAYMENT_COLLECTION = "payment"
CHECKOUT_INTENT_COLLECTION = "checkoutIntent"


class Store:
    """Explicit handle on the shop database.

    Built once per application and handed to the route factory, so tests
    can swap in any pymongo-compatible database.
    """

    def __init__(self, database, client=None):
        self.database = database
        self.client = client

    @classmethod
    def connect(cls, app: Flask) -> "Store":
        mongo = PyMongo(app, maxPoolSize=app.config["MONGO_MAX_POOL_SIZE"])
        return cls(mongo.cx[app.config["MONGO_DBNAME"]], client=mongo.cx)

    @property
    def users(self):
        return self.database[USERS_COLLECTION]

    @property
    def products(self):
        return self.database[PRODUCT_COLLECTION]

    @property
    def selections(self):
        return self.database[SELECTION_COLLECTION]

    @property
    def payments(self):
        return self.database[PAYMENT_COLLECTION]

    @property
    def checkout_intents(self):
        return self.database[CHECKOUT_INTENT_COLLECTION]

    def close(self):
        if self.client is not None:
            self.client.close()


def parse_object_id(value) -> Optional[ObjectId]:
    if isinstance(value, ObjectId):
        return value
    try:
        return ObjectId(str(value).strip())
    except (InvalidId, TypeError):
        return None


def serialize_value(value):
    if isinstance(value, ObjectId):
        return str(value)
    if isinstance(value, datetime):
        return value.isoformat() + "Z"
    if isinstance(value, dict):
        return {str(key): serialize_value(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [serialize_value(item) for item in value]
    return value


def serialize_document(document) -> Dict[str, object]:
    if not document:
        return {}
    return serialize_value(document)

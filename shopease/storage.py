import re
from datetime import datetime
from typing import Dict, List, Optional, Tuple

from bson import ObjectId
from pymongo import ASCENDING, DESCENDING, ReturnDocument
from pymongo.errors import PyMongoError

from shopease.errors import InvalidIdentifierFormat

PAID = "Paid"
UNPAID = "Unpaid"
PENDING = "pending"
CONFIRMED = "confirmed"


def to_object_id(value, label: str = "identifier") -> ObjectId:
    if isinstance(value, ObjectId):
        return value
    candidate = str(value or "").strip()
    if not ObjectId.is_valid(candidate):
        raise InvalidIdentifierFormat(f"Invalid {label}.")
    return ObjectId(candidate)


def normalize_email(value: Optional[str]) -> str:
    return str(value or "").strip().lower()


def serialize_document(document):
    if not document:
        return None
    serialized = {}
    for key, value in document.items():
        if isinstance(value, ObjectId):
            serialized[key] = str(value)
        elif isinstance(value, datetime):
            serialized[key] = value.isoformat() + "Z"
        elif isinstance(value, bytes):
            continue
        else:
            serialized[key] = value
    return serialized


def build_product_query(category: Optional[str] = None, search: Optional[str] = None) -> Dict:
    query: Dict[str, object] = {}

    category = str(category or "").strip()
    if category and category.lower() != "all":
        query["category"] = {"$regex": f"^{re.escape(category)}$", "$options": "i"}

    search = str(search or "").strip()
    if search:
        query["name"] = {"$regex": re.escape(search), "$options": "i"}

    return query


class Storage:
    """Queries over the users, products, cart, orders and payments collections.

    Every method issues independent single-document operations; callers that
    need two writes to succeed together handle the undo themselves.
    """

    def __init__(self, db, logger=None):
        self.db = db
        self.logger = logger
        self.users = db.users
        self.products = db.products
        self.cart = db.cartProducts
        self.orders = db.orders
        self.payments = db.payments

    def ensure_indexes(self):
        try:
            self.users.create_index("email", unique=True)
            self.payments.create_index("orderId", unique=True)
            self.products.create_index([("category", ASCENDING)])
            self.products.create_index([("orderCount", DESCENDING)])
            self.cart.create_index([("userEmail", ASCENDING)])
            self.orders.create_index([("customer_email", ASCENDING), ("createdAt", DESCENDING)])
        except PyMongoError as exc:
            if self.logger:
                self.logger.warning("Unable to ensure indexes: %s", exc)

    # --- Users ---

    def find_user_by_email(self, email: str):
        return self.users.find_one({"email": normalize_email(email)})

    def insert_user(self, user_document: Dict) -> ObjectId:
        return self.users.insert_one(user_document).inserted_id

    def touch_user_login(self, user_id: ObjectId):
        self.users.update_one({"_id": user_id}, {"$set": {"lastLoginAt": datetime.utcnow()}})

    def list_users(self) -> List[Dict]:
        return list(self.users.find({}, {"password": 0}).sort("createdAt", DESCENDING))

    # --- Products ---

    def insert_product(self, product_document: Dict) -> ObjectId:
        return self.products.insert_one(product_document).inserted_id

    def find_product(self, product_id):
        return self.products.find_one({"_id": to_object_id(product_id, "product identifier")})

    def list_products(
        self,
        category: Optional[str] = None,
        search: Optional[str] = None,
        page: int = 1,
        limit: int = 12,
    ) -> Tuple[List[Dict], int]:
        query = build_product_query(category, search)
        skip = (page - 1) * limit
        items = list(self.products.find(query).sort("_id", ASCENDING).skip(skip).limit(limit))
        total = self.products.count_documents(query)
        return items, total

    def all_products(self) -> List[Dict]:
        return list(self.products.find().sort("_id", ASCENDING))

    def update_product(self, product_id, fields: Dict):
        fields = dict(fields, updatedAt=datetime.utcnow())
        return self.products.find_one_and_update(
            {"_id": to_object_id(product_id, "product identifier")},
            {"$set": fields},
            return_document=ReturnDocument.AFTER,
        )

    def delete_product(self, product_id) -> bool:
        result = self.products.delete_one({"_id": to_object_id(product_id, "product identifier")})
        return result.deleted_count == 1

    def increment_order_count(self, product_id) -> bool:
        result = self.products.update_one(
            {"_id": to_object_id(product_id, "product identifier")}, {"$inc": {"orderCount": 1}}
        )
        return result.matched_count == 1

    def popular_products(self, limit: int = 8) -> List[Dict]:
        cursor = self.products.find().sort([("orderCount", DESCENDING), ("_id", ASCENDING)])
        return list(cursor.limit(limit))

    # --- Cart ---

    def insert_cart_item(self, item_document: Dict) -> ObjectId:
        return self.cart.insert_one(item_document).inserted_id

    def cart_for(self, email: str) -> List[Dict]:
        return list(self.cart.find({"userEmail": normalize_email(email)}).sort("_id", ASCENDING))

    def find_cart_item(self, item_id):
        return self.cart.find_one({"_id": to_object_id(item_id, "cart item identifier")})

    def delete_cart_item(self, item_id) -> bool:
        result = self.cart.delete_one({"_id": to_object_id(item_id, "cart item identifier")})
        return result.deleted_count == 1

    def clear_cart(self, email: str, product_id: Optional[str] = None) -> int:
        query: Dict[str, object] = {"userEmail": normalize_email(email)}
        if product_id:
            query["productId"] = str(product_id)
        return self.cart.delete_many(query).deleted_count

    # --- Orders ---

    def insert_order(self, order_document: Dict) -> ObjectId:
        return self.orders.insert_one(order_document).inserted_id

    def find_order(self, order_id):
        return self.orders.find_one({"_id": to_object_id(order_id, "order identifier")})

    def orders_for(self, email: str) -> List[Dict]:
        cursor = self.orders.find({"customer_email": normalize_email(email)})
        return list(cursor.sort("createdAt", DESCENDING))

    def all_orders(self) -> List[Dict]:
        return list(self.orders.find().sort("createdAt", DESCENDING))

    def set_payment_intent(self, order_id, intent_id: str):
        self.orders.update_one(
            {"_id": to_object_id(order_id, "order identifier")},
            {"$set": {"paymentIntentId": intent_id}},
        )

    def mark_order_paid(self, order_id):
        """Flip an unpaid order to Paid; returns None when it was already paid or is gone."""
        return self.orders.find_one_and_update(
            {"_id": to_object_id(order_id, "order identifier"), "payment_status": {"$ne": PAID}},
            {"$set": {"payment_status": PAID, "paidAt": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )

    def revert_order_paid(self, order_id):
        self.orders.update_one(
            {"_id": to_object_id(order_id, "order identifier"), "payment_status": PAID},
            {"$set": {"payment_status": UNPAID}, "$unset": {"paidAt": ""}},
        )

    def delete_unpaid_order(self, order_id) -> bool:
        result = self.orders.delete_one(
            {"_id": to_object_id(order_id, "order identifier"), "payment_status": {"$ne": PAID}}
        )
        return result.deleted_count == 1

    def delete_order(self, order_id) -> bool:
        result = self.orders.delete_one({"_id": to_object_id(order_id, "order identifier")})
        return result.deleted_count == 1

    def confirm_order(self, order_id):
        return self.orders.find_one_and_update(
            {"_id": to_object_id(order_id, "order identifier")},
            {"$set": {"confirmation_status": CONFIRMED, "confirmedAt": datetime.utcnow()}},
            return_document=ReturnDocument.AFTER,
        )

    # --- Payments ---

    def insert_payment(self, payment_document: Dict) -> ObjectId:
        return self.payments.insert_one(payment_document).inserted_id

    def payments_for(self, email: str) -> List[Dict]:
        cursor = self.payments.find({"customer_email": normalize_email(email)})
        return list(cursor.sort("paid_at", DESCENDING))

    # --- Aggregates ---

    def counts(self) -> Dict[str, int]:
        return {
            "users": self.users.count_documents({}),
            "products": self.products.count_documents({}),
            "orders": self.orders.count_documents({}),
            "payments": self.payments.count_documents({}),
        }

    def revenue(self) -> float:
        pipeline = [{"$group": {"_id": None, "total": {"$sum": "$amount"}}}]
        results = list(self.payments.aggregate(pipeline))
        if not results:
            return 0.0
        return round(float(results[0].get("total") or 0), 2)

    def monthly_order_counts(self) -> List[Dict[str, int]]:
        pipeline = [
            {"$match": {"createdAt": {"$exists": True, "$ne": None}}},
            {
                "$group": {
                    "_id": {"year": {"$year": "$createdAt"}, "month": {"$month": "$createdAt"}},
                    "count": {"$sum": 1},
                }
            },
        ]
        months = [
            {"year": row["_id"]["year"], "month": row["_id"]["month"], "count": row["count"]}
            for row in self.orders.aggregate(pipeline)
        ]
        months.sort(key=lambda row: (row["year"], row["month"]))
        return months

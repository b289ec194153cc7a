"""Order lifecycle: creation, payment intents, payment capture, cancellation.

An order moves ``Created -> IntentIssued -> Paid`` or is cancelled while it is
still unpaid. Storage offers no multi-document transactions, so each two-step
effect starts with a conditional write and undoes it if the second step fails.
"""
import math
from datetime import datetime
from typing import Dict, List

from pymongo.errors import DuplicateKeyError

from shopease.errors import AlreadyPaid, AmountMismatch, NotFound, ValidationError
from shopease.storage import PAID, PENDING, UNPAID, normalize_email, to_object_id

MAX_ORDER_QUANTITY = 1000
MAX_AMOUNT = 10 ** 9


def safe_float(value, default=None):
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return default
    if math.isfinite(numeric):
        return numeric
    return default


def safe_positive_int(value, default=0):
    try:
        numeric = int(float(value))
    except (TypeError, ValueError, OverflowError):
        return default
    return max(default, numeric)


def parse_quantity(value) -> int:
    quantity = safe_positive_int(value, 1) or 1
    if quantity > MAX_ORDER_QUANTITY:
        raise ValidationError(f"quantity must not exceed {MAX_ORDER_QUANTITY}.")
    return quantity


def to_cents(amount: float) -> int:
    return int(round(float(amount) * 100))


class OrderCoordinator:
    def __init__(self, storage, payment_client, logger):
        self.storage = storage
        self.payment_client = payment_client
        self.logger = logger

    def _load_order(self, order_id):
        order_document = self.storage.find_order(order_id)
        if not order_document:
            raise NotFound("Order not found")
        return order_document

    def get_order(self, order_id):
        return self._load_order(order_id)

    def orders_for(self, email: str) -> List[Dict]:
        return self.storage.orders_for(email)

    def all_orders(self) -> List[Dict]:
        return self.storage.all_orders()

    def create_order(self, payload: Dict) -> Dict:
        product_id = str(payload.get("productId") or payload.get("product_id") or "").strip()
        if not product_id:
            raise ValidationError("productId is required.")
        to_object_id(product_id, "product identifier")

        customer_email = normalize_email(payload.get("customer_email") or payload.get("email"))
        if not customer_email:
            raise ValidationError("customer_email is required.")

        product_document = self.storage.find_product(product_id)
        if not product_document:
            raise NotFound("Product not found")

        quantity = parse_quantity(payload.get("quantity"))
        unit_price = safe_float(product_document.get("price"))
        if unit_price is not None:
            total_price = round(unit_price * quantity, 2)
        else:
            total_price = safe_float(payload.get("totalPrice"))
            if total_price is None or not 0 < total_price <= MAX_AMOUNT:
                raise ValidationError("totalPrice must be a positive number.")
            total_price = round(total_price, 2)

        order_document = {
            "productId": product_id,
            "productName": product_document.get("name", ""),
            "quantity": quantity,
            "totalPrice": total_price,
            "customer_email": customer_email,
            "customer_name": str(payload.get("customer_name") or "").strip(),
            "payment_status": UNPAID,
            "confirmation_status": PENDING,
            "createdAt": datetime.utcnow(),
        }
        order_id = self.storage.insert_order(order_document)
        order_document["_id"] = order_id

        if not self.storage.increment_order_count(product_id):
            # Product vanished between the lookup and the increment.
            self.storage.delete_order(order_id)
            self.logger.warning(
                "Order %s rolled back: product %s no longer exists", order_id, product_id
            )
            raise NotFound("Product not found")

        self.logger.info(
            "Order %s created for %s (product %s, total %s)",
            order_id,
            customer_email,
            product_id,
            total_price,
        )
        return order_document

    def create_payment_intent(self, order_id, amount_in_cents) -> Dict[str, str]:
        order_document = self._load_order(order_id)
        if order_document.get("payment_status") == PAID:
            raise AlreadyPaid()

        expected_cents = to_cents(order_document.get("totalPrice") or 0)
        if amount_in_cents != expected_cents:
            self.logger.warning(
                "Payment intent rejected for order %s: claimed %s cents, expected %s",
                order_document["_id"],
                amount_in_cents,
                expected_cents,
            )
            raise AmountMismatch("Amount mismatch")

        intent = self.payment_client.create_payment_intent(
            expected_cents,
            metadata={
                "orderId": str(order_document["_id"]),
                "customer_email": order_document.get("customer_email"),
            },
        )
        intent_id = intent.get("id")
        if intent_id:
            self.storage.set_payment_intent(order_document["_id"], intent_id)

        self.logger.info("Payment intent %s issued for order %s", intent_id, order_document["_id"])
        return {"clientSecret": intent["client_secret"]}

    def confirm_payment(self, payload: Dict) -> Dict:
        order_id = str(payload.get("orderId") or "").strip()
        if not order_id:
            raise ValidationError("orderId is required.")
        transaction_id = str(payload.get("transactionId") or "").strip()
        if not transaction_id:
            raise ValidationError("transactionId is required.")
        amount = safe_float(payload.get("amount"))
        if amount is None or abs(amount) > MAX_AMOUNT:
            raise ValidationError("amount must be a number.")

        order_document = self._load_order(order_id)
        if to_cents(amount) != to_cents(order_document.get("totalPrice") or 0):
            self.logger.warning(
                "Payment rejected for order %s: amount %s does not match total %s",
                order_document["_id"],
                amount,
                order_document.get("totalPrice"),
            )
            raise AmountMismatch("Amount mismatch")

        paid_order = self.storage.mark_order_paid(order_document["_id"])
        if not paid_order:
            # Paid or cancelled by a concurrent request.
            if not self.storage.find_order(order_document["_id"]):
                raise NotFound("Order not found")
            raise AlreadyPaid()

        payment_document = {
            "orderId": str(order_document["_id"]),
            "amount": round(amount, 2),
            "customer_email": normalize_email(
                payload.get("customer_email") or order_document.get("customer_email")
            ),
            "transactionId": transaction_id,
            "method": str(payload.get("method") or "card").strip() or "card",
            "paid_at": datetime.utcnow(),
        }
        try:
            payment_document["_id"] = self.storage.insert_payment(payment_document)
        except DuplicateKeyError as exc:
            raise AlreadyPaid() from exc
        except Exception:
            self.storage.revert_order_paid(order_document["_id"])
            self.logger.error(
                "Payment insert failed for order %s; status reverted to %s",
                order_document["_id"],
                UNPAID,
            )
            raise

        self.storage.clear_cart(order_document.get("customer_email"), order_document.get("productId"))

        self.logger.info(
            "Payment %s recorded for order %s (transaction %s)",
            payment_document["_id"],
            order_document["_id"],
            transaction_id,
        )
        return payment_document

    def cancel_order(self, order_id) -> None:
        order_document = self._load_order(order_id)
        if order_document.get("payment_status") == PAID:
            raise AlreadyPaid("Cannot delete a paid order")

        if not self.storage.delete_unpaid_order(order_document["_id"]):
            # Paid or removed by a concurrent request.
            if self.storage.find_order(order_document["_id"]):
                raise AlreadyPaid("Cannot delete a paid order")
            raise NotFound("Order not found")

        self.logger.info("Order %s cancelled", order_document["_id"])

    def confirm_delivery(self, order_id) -> Dict:
        order_document = self.storage.confirm_order(order_id)
        if not order_document:
            raise NotFound("Order not found")
        self.logger.info("Order %s confirmed", order_document["_id"])
        return order_document

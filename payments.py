"""
Payments: the Stripe gateway client and the ledger that reconciles confirmed
payments with orders.

Reconciliation rules:
    - the order must exist and not be cancelled;
    - the provider must report the payment as completed;
    - the payer email must equal the order's contact email;
    - the amount must equal the order total to the cent.
A confirmation whose transaction_ref is already recorded is a replay and
succeeds without creating anything new.
"""
import logging
from typing import List, Optional

import stripe
from pymongo.database import Database
from pymongo.errors import DuplicateKeyError

from database import attach, create_document, find_by_id, serialize, utcnow
from errors import (InvalidCredential, InvalidTransition, NotFound, PaymentMismatch, Unavailable,
                    ValidationError)
from policy import Action, authorize
from schemas import (ConfirmPayload, IntentPayload, IntentResult, Payment, PaymentConfirmation,
                     PaymentEvent, Principal)

logger = logging.getLogger(__name__)

STRIPE_STATUSES = {
    "succeeded": "completed",
    "canceled": "failed",
}


def to_cents(amount: float) -> int:
    return int(round(amount * 100))


class StripeGateway:
    """Payment provider client built on the Stripe SDK.

    The secret key is passed per call so several gateways (tests, tenants) can
    coexist in one process.
    """

    def __init__(self, secret_key: Optional[str], webhook_secret: Optional[str] = None):
        self.secret_key = secret_key
        self.webhook_secret = webhook_secret

    def _api_key(self) -> str:
        if not self.secret_key:
            raise Unavailable("Payments are not configured")
        return self.secret_key

    @staticmethod
    def _confirmation(intent, failed: bool = False) -> PaymentConfirmation:
        metadata = intent.get("metadata") or {}
        cents = intent.get("amount_received") or intent.get("amount") or 0
        return PaymentConfirmation(
            transaction_ref=intent["id"],
            order_id=metadata.get("order_id"),
            amount=cents / 100,
            currency=intent.get("currency") or "usd",
            provider_status="failed" if failed else STRIPE_STATUSES.get(intent.get("status"), "pending"),
            payer_email=metadata.get("payer_email"),
        )

    def create_intent(self, amount: float, currency: str, metadata: dict) -> IntentResult:
        try:
            intent = stripe.PaymentIntent.create(
                amount=to_cents(amount),
                currency=currency,
                metadata=metadata,
                automatic_payment_methods={"enabled": True},
                api_key=self._api_key(),
            )
        except stripe.StripeError as e:
            logger.error(f"Stripe create intent failed: {str(e)[:80]}")
            raise Unavailable("Payment provider unavailable")
        return IntentResult(intent_ref=intent["id"], client_secret=intent.get("client_secret"),
                            amount=amount, currency=currency)

    def retrieve(self, intent_ref: str) -> PaymentConfirmation:
        try:
            intent = stripe.PaymentIntent.retrieve(intent_ref, api_key=self._api_key())
        except stripe.InvalidRequestError:
            raise NotFound("Payment intent not found")
        except stripe.StripeError as e:
            logger.error(f"Stripe retrieve {intent_ref} failed: {str(e)[:80]}")
            raise Unavailable("Payment provider unavailable")
        return self._confirmation(intent)

    def parse_event(self, payload: bytes, signature: Optional[str]) -> PaymentEvent:
        """Check the Stripe-Signature header and decode a webhook event."""
        if not self.webhook_secret:
            raise Unavailable("Payment webhooks are not configured")
        try:
            event = stripe.Webhook.construct_event(payload, signature or "", self.webhook_secret)
        except stripe.SignatureVerificationError:
            raise InvalidCredential("Invalid webhook signature")
        except ValueError:
            raise ValidationError("Malformed webhook payload")
        kind = event["type"]
        intent = event["data"]["object"]
        confirmation = None
        if kind.startswith("payment_intent.") and intent.get("id"):
            confirmation = self._confirmation(intent, failed=kind == "payment_intent.payment_failed")
        return PaymentEvent(type=kind, confirmation=confirmation)


class PaymentLedger:
    def __init__(self, db: Database, gateway, currency: str = "usd"):
        self.db = db
        self.gateway = gateway
        self.currency = currency

    @property
    def payments(self):
        return self.db["payment"]

    def create_intent(self, principal: Principal, payload: IntentPayload) -> IntentResult:
        currency = payload.currency or self.currency
        metadata = {"user_id": principal.id, "payer_email": principal.email}
        amount = payload.amount
        if payload.order_id:
            order = find_by_id(self.db, "order", payload.order_id, "Order")
            authorize(principal, Action.PAYMENT_PAY, order["user_id"])
            if amount is not None and to_cents(amount) != to_cents(order["total_amount"]):
                raise ValidationError(errors=[{"field": "amount", "message": "amount must equal the order total"}])
            amount = order["total_amount"]
            metadata["order_id"] = payload.order_id
            metadata["payer_email"] = order["contact_email"]
        if not amount or amount <= 0:
            raise ValidationError(errors=[{"field": "amount", "message": "Valid amount is required"}])
        intent = self.gateway.create_intent(amount, currency, metadata)
        logger.info(f"Payment intent {intent.intent_ref} created for {principal.id}")
        return intent

    def confirm(self, principal: Principal, payload: ConfirmPayload) -> dict:
        order = find_by_id(self.db, "order", payload.order_id, "Order")
        authorize(principal, Action.PAYMENT_PAY, order["user_id"])
        confirmation = self.gateway.retrieve(payload.transaction_ref)
        if confirmation.order_id and confirmation.order_id != payload.order_id:
            raise PaymentMismatch("Payment belongs to a different order")
        confirmation = confirmation.model_copy(update={"order_id": payload.order_id})
        return self.reconcile(confirmation)

    def handle_webhook(self, payload: bytes, signature: Optional[str]) -> dict:
        event = self.gateway.parse_event(payload, signature)
        if event.confirmation and not event.confirmation.order_id:
            # Standalone intents (amount only) have nothing to reconcile.
            logger.info(f"Event {event.type} for unlinked payment {event.confirmation.transaction_ref}")
            return {"received": True}
        if event.type == "payment_intent.succeeded" and event.confirmation:
            payment = self.reconcile(event.confirmation)
            return {"received": True, "payment_id": payment["_id"]}
        if event.type == "payment_intent.payment_failed" and event.confirmation:
            logger.warning(f"Payment {event.confirmation.transaction_ref} failed "
                           f"for order {event.confirmation.order_id}")
        return {"received": True}

    def _check(self, order: dict, confirmation: PaymentConfirmation) -> None:
        ref = confirmation.transaction_ref
        if confirmation.provider_status != "completed":
            raise PaymentMismatch("Payment not completed")
        if order["status"] == "cancelled":
            raise InvalidTransition("Order is cancelled")
        if order.get("payment_status") == "paid" and order.get("transaction_ref") != ref:
            raise PaymentMismatch("Order is already paid")
        payer = (confirmation.payer_email or "").strip().lower()
        if payer != order["contact_email"].lower():
            raise PaymentMismatch("Payer does not match the order")
        if to_cents(confirmation.amount) != to_cents(order["total_amount"]):
            raise PaymentMismatch(
                f"Paid amount {confirmation.amount} does not match order total {order['total_amount']}")

    def _mark_paid(self, order: dict, ref: str) -> None:
        for _ in range(3):
            patch = {"payment_status": "paid", "transaction_ref": ref, "updated_at": utcnow()}
            if order["status"] == "pending":
                patch["status"] = "confirmed"
            res = self.db["order"].update_one({"_id": order["_id"], "status": order["status"]}, {"$set": patch})
            if res.matched_count:
                return
            order = find_by_id(self.db, "order", str(order["_id"]), "Order")
        raise InvalidTransition("Order changed concurrently, retry the confirmation")

    def _recorded(self, ref: str) -> Optional[dict]:
        return self.payments.find_one({"transaction_ref": ref})

    def _replay(self, existing: dict, order: dict) -> dict:
        if existing["order_id"] != str(order["_id"]):
            raise PaymentMismatch("Transaction already used for a different order")
        ref = existing["transaction_ref"]
        if order.get("payment_status") != "paid" or order.get("transaction_ref") != ref:
            # The payment was recorded but the order update was lost.
            self._mark_paid(order, ref)
        logger.info(f"Replayed confirmation {ref} ignored")
        return serialize(existing)

    def reconcile(self, confirmation: PaymentConfirmation) -> dict:
        if not confirmation.order_id:
            raise PaymentMismatch("Payment is not linked to an order")
        order = find_by_id(self.db, "order", confirmation.order_id, "Order")
        ref = confirmation.transaction_ref
        existing = self._recorded(ref)
        if existing:
            return self._replay(existing, order)
        try:
            self._check(order, confirmation)
        except (PaymentMismatch, InvalidTransition) as e:
            logger.warning(f"Rejected payment {ref} for order {confirmation.order_id}: {e.message}")
            raise
        payment = Payment(
            user_id=order["user_id"],
            order_id=confirmation.order_id,
            amount=confirmation.amount,
            currency=confirmation.currency,
            transaction_ref=ref,
            provider_status="completed",
        )
        try:
            doc = create_document(self.db, "payment", payment)
        except DuplicateKeyError:
            return self._replay(self.payments.find_one({"transaction_ref": ref}), order)
        self._mark_paid(order, ref)
        logger.info(f"Payment {ref} reconciled with order {confirmation.order_id}")
        return serialize(doc)

    def history(self, principal: Principal) -> List[dict]:
        payments = list(self.payments.find({"user_id": principal.id}).sort([("created_at", -1), ("_id", -1)]))
        attach(self.db, payments, "order", "order_id", "order")
        return [serialize(p) for p in payments]

    def get(self, principal: Principal, payment_id: str) -> dict:
        payment = find_by_id(self.db, "payment", payment_id, "Payment")
        authorize(principal, Action.PAYMENT_READ, payment["user_id"])
        attach(self.db, [payment], "order", "order_id", "order")
        if payment["order"]:
            attach(self.db, [payment["order"]], "book", "book_id", "book")
        return serialize(payment)

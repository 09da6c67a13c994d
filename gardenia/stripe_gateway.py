"""Thin wrapper over the Stripe SDK.

Every SDK failure leaves this module as a ``PaymentProviderError`` carrying a
message from the localized catalogue, so routers never see raw Stripe errors.
"""

from decimal import ROUND_HALF_UP, Decimal

import stripe
import structlog

from .config import settings
from .models import User

stripe.api_key = settings.STRIPE_SECRET_KEY
logger = structlog.get_logger("gardenia.stripe")

MESSAGES = {
    "pt-BR": {
        "card_error": "O cartão foi recusado.",
        "invalid_request": "Requisição inválida ao processador de pagamentos.",
        "authentication": "Falha de autenticação com o processador de pagamentos.",
        "rate_limit": "Muitas requisições ao processador de pagamentos. Tente novamente em instantes.",
        "connection": "Não foi possível conectar ao processador de pagamentos.",
        "signature": "Assinatura do webhook inválida.",
        "invalid_payload": "Payload do webhook inválido.",
        "not_confirmed": "Pagamento não foi confirmado. Status: {status}",
        "not_configured": "Processador de pagamentos não configurado.",
        "provider_error": "Erro no processador de pagamentos.",
    },
    "en": {
        "card_error": "The card was declined.",
        "invalid_request": "Invalid request to the payment processor.",
        "authentication": "Authentication with the payment processor failed.",
        "rate_limit": "Too many requests to the payment processor. Try again shortly.",
        "connection": "Could not reach the payment processor.",
        "signature": "Invalid webhook signature.",
        "invalid_payload": "Invalid webhook payload.",
        "not_confirmed": "Payment was not confirmed. Status: {status}",
        "not_configured": "Payment processor is not configured.",
        "provider_error": "Payment processor error.",
    },
}


def localized_message(code: str, **params) -> str:
    locale = settings.APP_LOCALE if settings.APP_LOCALE in MESSAGES else "en"
    catalogue = MESSAGES[locale]
    template = catalogue.get(code) or catalogue["provider_error"]
    return template.format(**params)


class PaymentProviderError(Exception):
    def __init__(self, code: str, message: str | None = None, provider_message: str | None = None, **params):
        self.code = code
        self.message = message or localized_message(code, **params)
        self.provider_message = provider_message
        super().__init__(self.message)

    @property
    def status_code(self) -> int:
        if self.code == "card_error":
            return 402
        if self.code in {"signature", "invalid_payload"}:
            return 400
        return 502


def _wrap(exc: Exception, operation: str) -> PaymentProviderError:
    if isinstance(exc, stripe.CardError):
        code = "card_error"
    elif isinstance(exc, stripe.SignatureVerificationError):
        code = "signature"
    elif isinstance(exc, stripe.InvalidRequestError):
        code = "invalid_request"
    elif isinstance(exc, stripe.AuthenticationError):
        code = "authentication"
    elif isinstance(exc, stripe.RateLimitError):
        code = "rate_limit"
    elif isinstance(exc, stripe.APIConnectionError):
        code = "connection"
    else:
        code = "provider_error"
    provider_message = getattr(exc, "user_message", None) or str(exc)
    logger.error("stripe_call_failed", operation=operation, code=code, error=provider_message)
    return PaymentProviderError(code, provider_message=provider_message)


def to_minor_units(amount) -> int:
    value = Decimal(str(amount)).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)
    return int(value * 100)


def from_minor_units(amount: int | None) -> float:
    return float(Decimal(int(amount or 0)) / Decimal(100))


class StripeGateway:
    def _ensure_configured(self) -> None:
        if not settings.STRIPE_SECRET_KEY:
            raise PaymentProviderError("not_configured")
        stripe.api_key = settings.STRIPE_SECRET_KEY

    def create_payment_intent(
        self,
        amount,
        currency: str | None = None,
        metadata: dict | None = None,
        idempotency_key: str | None = None,
    ):
        self._ensure_configured()
        params = {
            "amount": to_minor_units(amount),
            "currency": (currency or settings.PAYMENT_DEFAULT_CURRENCY).lower(),
            "metadata": {k: str(v) for k, v in (metadata or {}).items()},
            "automatic_payment_methods": {"enabled": True},
        }
        if idempotency_key:
            params["idempotency_key"] = idempotency_key
        try:
            intent = stripe.PaymentIntent.create(**params)
        except stripe.StripeError as exc:
            raise _wrap(exc, "create_payment_intent") from exc
        logger.info("stripe_intent_created", intent_id=intent.id, amount=params["amount"], currency=params["currency"])
        return intent

    def confirm_payment(self, payment_intent_id: str):
        self._ensure_configured()
        try:
            intent = stripe.PaymentIntent.retrieve(payment_intent_id)
        except stripe.StripeError as exc:
            raise _wrap(exc, "confirm_payment") from exc
        if intent.status != "succeeded":
            logger.warning("stripe_intent_not_succeeded", intent_id=payment_intent_id, status=intent.status)
            raise PaymentProviderError("not_confirmed", status=intent.status)
        return intent

    def create_refund(self, payment_intent_id: str, amount=None, reason: str | None = None):
        self._ensure_configured()
        params = {
            "payment_intent": payment_intent_id,
            "reason": reason if reason in {"duplicate", "fraudulent", "requested_by_customer"} else "requested_by_customer",
        }
        if amount is not None:
            params["amount"] = to_minor_units(amount)
        try:
            refund = stripe.Refund.create(**params)
        except stripe.StripeError as exc:
            raise _wrap(exc, "create_refund") from exc
        logger.info("stripe_refund_created", intent_id=payment_intent_id, refund_id=refund.id)
        return refund

    def get_or_create_customer(self, user: User):
        self._ensure_configured()
        try:
            if user.stripe_customer_id:
                customer = stripe.Customer.retrieve(user.stripe_customer_id)
                if not getattr(customer, "deleted", False):
                    return customer
            customer = stripe.Customer.create(
                email=user.email,
                name=user.name,
                metadata={"user_id": str(user.id)},
            )
        except stripe.StripeError as exc:
            raise _wrap(exc, "get_or_create_customer") from exc
        logger.info("stripe_customer_created", user_id=user.id, customer_id=customer.id)
        return customer

    def create_subscription(self, customer_id: str, price_id: str):
        self._ensure_configured()
        try:
            subscription = stripe.Subscription.create(
                customer=customer_id,
                items=[{"price": price_id}],
                payment_behavior="default_incomplete",
                expand=["latest_invoice.payment_intent"],
            )
        except stripe.StripeError as exc:
            raise _wrap(exc, "create_subscription") from exc
        logger.info("stripe_subscription_created", subscription_id=subscription.id, status=subscription.status)
        return subscription

    def get_subscription(self, subscription_id: str):
        self._ensure_configured()
        try:
            return stripe.Subscription.retrieve(subscription_id)
        except stripe.StripeError as exc:
            raise _wrap(exc, "get_subscription") from exc

    def cancel_subscription(self, subscription_id: str):
        self._ensure_configured()
        try:
            subscription = stripe.Subscription.cancel(subscription_id)
        except stripe.StripeError as exc:
            raise _wrap(exc, "cancel_subscription") from exc
        logger.info("stripe_subscription_cancelled", subscription_id=subscription_id)
        return subscription

    def construct_webhook_event(self, payload: bytes, signature: str | None):
        if not settings.STRIPE_WEBHOOK_SECRET:
            raise PaymentProviderError("not_configured")
        try:
            return stripe.Webhook.construct_event(payload, signature or "", settings.STRIPE_WEBHOOK_SECRET)
        except ValueError as exc:
            logger.error("stripe_webhook_invalid_payload", error=str(exc))
            raise PaymentProviderError("invalid_payload", provider_message=str(exc)) from exc
        except stripe.StripeError as exc:
            raise _wrap(exc, "construct_webhook_event") from exc


def subscription_client_secret(subscription) -> str | None:
    invoice = getattr(subscription, "latest_invoice", None)
    intent = getattr(invoice, "payment_intent", None) if invoice is not None else None
    return getattr(intent, "client_secret", None) if intent is not None else None


gateway = StripeGateway()

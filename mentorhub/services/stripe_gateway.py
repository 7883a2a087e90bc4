"""
mentorhub.services.stripe_gateway — Payment Processor Gateway
==============================================================

The only module that talks to Stripe.  Uses separate charges and
transfers: the platform collects the full amount at checkout and pays
the mentor's share out later via :meth:`StripeGateway.create_transfer`,
once the dispute window has closed.

Every ``stripe.StripeError`` is re-raised as
:class:`~mentorhub.errors.ProcessorError`.  Calls that carry an
idempotency key (or that failed before reaching Stripe) are marked
retryable.
"""

from __future__ import annotations

import json
import logging

import stripe

from mentorhub.errors import MalformedWebhookError, ProcessorError

logger = logging.getLogger(__name__)

PROVIDER = "payments"

_SETUP_MESSAGE = "Please complete your payment processor setup and try again."


class StripeGateway:
    """Stripe operations used by the settlement pipeline.

    Parameters
    ----------
    api_key:
        ``STRIPE_SECRET_KEY``.  Passed per call so no global state is set.
    """

    def __init__(self, api_key: str) -> None:
        self._api_key = api_key

    def _call(self, operation: str, fn, /, **kwargs):
        try:
            return fn(api_key=self._api_key, **kwargs)
        except stripe.StripeError as exc:
            retryable = "idempotency_key" in kwargs or isinstance(
                exc, (stripe.APIConnectionError, stripe.RateLimitError)
            )
            logger.error(
                "Stripe error during %s (status=%s, code=%s): %s",
                operation, exc.http_status, exc.code, exc.user_message or exc,
            )
            raise ProcessorError(
                f"Stripe {operation} failed: {exc.user_message or exc}",
                provider=PROVIDER,
                status_code=exc.http_status,
                body=str(exc.json_body or "")[:500],
                retryable=retryable,
            ) from exc

    # -------------------------------------------------------------------
    # Connected accounts
    # -------------------------------------------------------------------
    def create_connected_account(self, user_id: int, email: str) -> str:
        account = self._call(
            "account creation",
            stripe.Account.create,
            type="express",
            email=email,
            capabilities={"transfers": {"requested": True}},
            metadata={"userId": str(user_id)},
        )
        logger.info("Created Stripe connected account %s for user %d", account.id, user_id)
        return account.id

    def create_account_session(self, account_id: str) -> str:
        """Client secret for the embedded onboarding component."""
        session = self._call(
            "account session",
            stripe.AccountSession.create,
            account=account_id,
            components={"account_onboarding": {"enabled": True}},
        )
        return session.client_secret

    def retrieve_account(self, account_id: str) -> dict:
        account = self._call("account retrieval", stripe.Account.retrieve, id=account_id)
        return {
            "id": account.id,
            "charges_enabled": bool(getattr(account, "charges_enabled", False)),
            "payouts_enabled": bool(getattr(account, "payouts_enabled", False)),
            "details_submitted": bool(getattr(account, "details_submitted", False)),
            "metadata": dict(getattr(account, "metadata", None) or {}),
        }

    # -------------------------------------------------------------------
    # Charges
    # -------------------------------------------------------------------
    def create_checkout_session(
        self,
        *,
        amount: int,
        currency: str,
        product_name: str,
        customer_email: str,
        success_url: str,
        cancel_url: str,
        metadata: dict[str, str],
        idempotency_key: str | None = None,
    ) -> dict:
        kwargs = dict(
            mode="payment",
            customer_email=customer_email,
            line_items=[{
                "quantity": 1,
                "price_data": {
                    "currency": currency,
                    "unit_amount": amount,
                    "product_data": {"name": product_name},
                },
            }],
            payment_intent_data={"metadata": metadata},
            metadata=metadata,
            success_url=success_url,
            cancel_url=cancel_url,
        )
        if idempotency_key:
            kwargs["idempotency_key"] = idempotency_key
        session = self._call("checkout session", stripe.checkout.Session.create, **kwargs)
        return {"id": session.id, "url": session.url}

    def refund(self, payment_intent_id: str, *, idempotency_key: str) -> str:
        refund = self._call(
            "refund",
            stripe.Refund.create,
            payment_intent=payment_intent_id,
            idempotency_key=idempotency_key,
        )
        logger.info("Refunded payment intent %s (%s)", payment_intent_id, refund.id)
        return refund.id

    # -------------------------------------------------------------------
    # Payouts
    # -------------------------------------------------------------------
    def create_transfer(
        self,
        *,
        amount: int,
        currency: str,
        destination: str,
        idempotency_key: str,
        metadata: dict[str, str],
    ) -> str:
        transfer = self._call(
            "transfer",
            stripe.Transfer.create,
            amount=amount,
            currency=currency,
            destination=destination,
            metadata=metadata,
            idempotency_key=idempotency_key,
        )
        return transfer.id

    def reverse_transfer(self, transfer_id: str, *, idempotency_key: str) -> str:
        reversal = self._call(
            "transfer reversal",
            stripe.Transfer.create_reversal,
            id=transfer_id,
            idempotency_key=idempotency_key,
        )
        return reversal.id

    # -------------------------------------------------------------------
    # Webhooks
    # -------------------------------------------------------------------
    @staticmethod
    def construct_event(payload: bytes, signature: str | None, secret: str) -> dict:
        """Verify a webhook body's signature and return the event as a plain dict.

        Raises
        ------
        MalformedWebhookError
            Missing/invalid signature or unparseable body.
        """
        if not signature:
            raise MalformedWebhookError("Missing Stripe-Signature header")
        try:
            text = payload.decode("utf-8") if isinstance(payload, bytes) else payload
            stripe.WebhookSignature.verify_header(text, signature, secret)
            event = json.loads(text)
        except stripe.SignatureVerificationError as exc:
            raise MalformedWebhookError(f"Invalid Stripe signature: {exc}") from exc
        except ValueError as exc:
            raise MalformedWebhookError(f"Unparseable Stripe payload: {exc}") from exc
        if not isinstance(event, dict) or "type" not in event:
            raise MalformedWebhookError("Stripe payload is not an event object")
        return event


def setup_required_error(message: str) -> ProcessorError:
    """A :class:`ProcessorError` telling the mentor to finish onboarding."""
    return ProcessorError(message, provider=PROVIDER, user_message=_SETUP_MESSAGE)

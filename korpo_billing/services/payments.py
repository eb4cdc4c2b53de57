"""Payment processor collaborator — Stripe behind a small protocol.

The billing services only ever talk to ``PaymentProcessor``; tests swap in a
fake. The Stripe SDK is synchronous, so every call runs in a worker thread.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from decimal import ROUND_HALF_UP, Decimal
from typing import Protocol

import stripe

from korpo_billing.errors import PaymentProcessorError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutIntent:
    checkout_url: str
    session_id: str
    customer_id: str | None = None


@dataclass(frozen=True)
class InvoiceLine:
    description: str
    amount: float  # USD


@dataclass(frozen=True)
class ProcessorInvoice:
    invoice_id: str
    hosted_url: str | None = None
    metadata: dict = field(default_factory=dict)


def to_cents(amount: float | Decimal) -> int:
    """USD to integer cents, half-up."""
    return int((Decimal(str(amount)) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


class PaymentProcessor(Protocol):
    async def create_recurring_checkout(
        self,
        user_id: str,
        *,
        email: str | None,
        customer_id: str | None,
        success_url: str,
        cancel_url: str,
    ) -> CheckoutIntent: ...

    async def cancel_subscription(self, subscription_id: str) -> None: ...

    async def create_invoice(
        self,
        customer_id: str,
        lines: list[InvoiceLine],
        *,
        description: str,
        metadata: dict[str, str],
        charge_automatically: bool = False,
        days_until_due: int | None = None,
    ) -> ProcessorInvoice: ...

    async def pay_invoice_immediately(self, invoice_id: str) -> None: ...

    async def create_one_off_checkout(
        self,
        customer_id: str,
        amount: float,
        *,
        description: str,
        metadata: dict[str, str],
        success_url: str,
        cancel_url: str,
    ) -> CheckoutIntent: ...


class StripePaymentProcessor:
    def __init__(
        self,
        secret_key: str,
        *,
        platform_price_id: str,
        usage_price_id: str = "",
    ):
        self._secret_key = secret_key
        self._platform_price_id = platform_price_id
        self._usage_price_id = usage_price_id

    async def _call(self, fn, *args, **kwargs):
        stripe.api_key = self._secret_key
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except stripe.StripeError as e:
            logger.error("Stripe call %s failed: %s", getattr(fn, "__qualname__", fn), e)
            raise PaymentProcessorError(f"Payment processor error: {e.user_message or e}") from e

    async def create_recurring_checkout(self, user_id, *, email, customer_id, success_url, cancel_url):
        if not self._platform_price_id:
            raise PaymentProcessorError("Platform price not configured")

        if not customer_id:
            customer = await self._call(
                stripe.Customer.create, email=email, metadata={"user_id": user_id}
            )
            customer_id = customer.id

        line_items = [{"price": self._platform_price_id, "quantity": 1}]
        if self._usage_price_id:
            # Metered prices take no quantity
            line_items.append({"price": self._usage_price_id})

        session = await self._call(
            stripe.checkout.Session.create,
            customer=customer_id,
            payment_method_types=["card"],
            line_items=line_items,
            mode="subscription",
            success_url=success_url,
            cancel_url=cancel_url,
            metadata={"user_id": user_id, "plan": "premium"},
            subscription_data={"metadata": {"user_id": user_id, "plan": "premium"}},
        )
        return CheckoutIntent(checkout_url=session.url, session_id=session.id, customer_id=customer_id)

    async def cancel_subscription(self, subscription_id):
        await self._call(stripe.Subscription.cancel, subscription_id)
        logger.info("Cancelled Stripe subscription %s", subscription_id)

    async def create_invoice(
        self,
        customer_id,
        lines,
        *,
        description,
        metadata,
        charge_automatically=False,
        days_until_due=None,
    ):
        params = {
            "customer": customer_id,
            "description": description,
            "metadata": metadata,
            "auto_advance": False,
            "pending_invoice_items_behavior": "exclude",
        }
        if charge_automatically:
            params["collection_method"] = "charge_automatically"
        else:
            params["collection_method"] = "send_invoice"
            params["days_until_due"] = days_until_due or 30

        invoice = await self._call(stripe.Invoice.create, **params)
        for line in lines:
            await self._call(
                stripe.InvoiceItem.create,
                customer=customer_id,
                invoice=invoice.id,
                amount=to_cents(line.amount),
                currency="usd",
                description=line.description,
            )
        invoice = await self._call(stripe.Invoice.finalize_invoice, invoice.id)
        return ProcessorInvoice(
            invoice_id=invoice.id,
            hosted_url=getattr(invoice, "hosted_invoice_url", None),
            metadata=dict(metadata),
        )

    async def pay_invoice_immediately(self, invoice_id):
        await self._call(stripe.Invoice.pay, invoice_id)

    async def create_one_off_checkout(
        self, customer_id, amount, *, description, metadata, success_url, cancel_url
    ):
        session = await self._call(
            stripe.checkout.Session.create,
            customer=customer_id,
            payment_method_types=["card"],
            line_items=[{
                "price_data": {
                    "currency": "usd",
                    "product_data": {"name": description},
                    "unit_amount": to_cents(amount),
                },
                "quantity": 1,
            }],
            mode="payment",
            success_url=success_url,
            cancel_url=cancel_url,
            metadata=metadata,
        )
        return CheckoutIntent(checkout_url=session.url, session_id=session.id, customer_id=customer_id)

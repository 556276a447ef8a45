"""Stripe processing-fee lookup for staged payments."""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Any, Callable

import stripe
from loguru import logger

if TYPE_CHECKING:
    from clubledger_api.core.settings import Settings


def _lookup(source: Any, key: str) -> Any:
    if source is None:
        return None
    if isinstance(source, dict):
        return source.get(key)
    try:
        return source[key]
    except (KeyError, TypeError):
        return getattr(source, key, None)


class StripeFeeResolver:
    """Resolve the Stripe fee (integer cents) charged on a payment intent."""

    def __init__(
        self,
        secret_key: str,
        *,
        retrieve_intent: Callable[..., Any] | None = None,
    ) -> None:
        if not secret_key:
            raise ValueError("Stripe secret key must be provided")
        self._secret_key = secret_key
        self._retrieve_intent = retrieve_intent or stripe.PaymentIntent.retrieve

    @classmethod
    def from_settings(cls, settings: "Settings") -> "StripeFeeResolver | None":
        if not settings.stripe_fee_lookup_enabled or not settings.stripe_secret_key:
            return None
        return cls(settings.stripe_secret_key)

    async def _run(self, func: Any, *args: Any, **kwargs: Any) -> Any:
        """Execute blocking Stripe SDK calls in a worker thread."""

        return await asyncio.to_thread(func, *args, **kwargs)

    async def get_fee_amount(self, payment_intent_id: str) -> int | None:
        """Return the fee in cents, or ``None`` when Stripe has not settled one yet."""

        try:
            intent = await self._run(
                self._retrieve_intent,
                payment_intent_id,
                expand=["latest_charge.balance_transaction"],
                api_key=self._secret_key,
            )
        except stripe.StripeError as exc:
            logger.warning("Stripe fee lookup failed", payment_intent_id=payment_intent_id, error=str(exc))
            return None

        balance_transaction = _lookup(_lookup(intent, "latest_charge"), "balance_transaction")
        fee = _lookup(balance_transaction, "fee")
        if fee is None:
            logger.info("Stripe fee not yet available", payment_intent_id=payment_intent_id)
            return None
        return int(fee)


__all__ = ["StripeFeeResolver"]

"""
Stripe refund client.

Only the refund call is needed by the escrow lifecycle; payment capture is
reported to us by the processor and handled in EscrowReleasePolicy.
"""

import asyncio
import logging
from typing import Optional, NamedTuple, Dict

import aiohttp

from config import Config
from utils.marketplace_errors import PaymentProcessorError

logger = logging.getLogger(__name__)


class RefundResult(NamedTuple):
    refund_id: str
    status: str
    amount_cents: int


class StripeRefundService:
    """Issues refunds against a captured payment intent"""

    def __init__(self, secret_key: Optional[str] = None, base_url: Optional[str] = None,
                 timeout_seconds: Optional[int] = None):
        self._secret_key = secret_key
        self.base_url = (base_url or Config.STRIPE_API_BASE_URL).rstrip("/")
        self.timeout_seconds = timeout_seconds or Config.PROVIDER_TIMEOUT_SECONDS

    @property
    def secret_key(self) -> str:
        key = self._secret_key or Config.STRIPE_SECRET_KEY
        if not key:
            raise PaymentProcessorError("STRIPE_SECRET_KEY is not configured")
        return key

    async def refund(
        self,
        payment_reference_id: str,
        amount_cents: Optional[int] = None,
        metadata: Optional[Dict[str, str]] = None,
    ) -> RefundResult:
        """Refund a payment intent fully, or partially when ``amount_cents`` is given"""
        form = {"payment_intent": payment_reference_id}
        if amount_cents is not None:
            form["amount"] = str(amount_cents)
        for key, value in (metadata or {}).items():
            form[f"metadata[{key}]"] = str(value)

        headers = {
            "Authorization": f"Bearer {self.secret_key}",
            "Idempotency-Key": f"refund-{payment_reference_id}",
        }
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(headers=headers, timeout=timeout) as session:
                async with session.post(f"{self.base_url}/v1/refunds", data=form) as response:
                    data = await response.json(content_type=None)
                    if response.status != 200:
                        error = (data or {}).get("error", {}) if isinstance(data, dict) else {}
                        logger.error(
                            f"❌ STRIPE_REFUND_FAILED: {payment_reference_id} HTTP {response.status} "
                            f"{error.get('code', '')} {error.get('message', '')}"
                        )
                        raise PaymentProcessorError(
                            f"Stripe refund failed for {payment_reference_id}: HTTP {response.status}",
                            status=response.status,
                        )
        except asyncio.TimeoutError as e:
            logger.error(f"⏱️ STRIPE_TIMEOUT: refund {payment_reference_id} exceeded {self.timeout_seconds}s")
            raise PaymentProcessorError(f"Stripe refund timeout for {payment_reference_id}") from e
        except aiohttp.ClientError as e:
            logger.error(f"❌ STRIPE_CONNECTION_ERROR: refund {payment_reference_id}: {e}")
            raise PaymentProcessorError(f"Stripe connection error: {e}") from e

        if not isinstance(data, dict) or "id" not in data or "status" not in data:
            raise PaymentProcessorError(f"Unexpected Stripe refund response for {payment_reference_id}")

        result = RefundResult(
            refund_id=data["id"],
            status=data["status"],
            amount_cents=int(data.get("amount", amount_cents or 0)),
        )
        if result.status in ("failed", "canceled"):
            raise PaymentProcessorError(
                f"Stripe refund {result.refund_id} ended in status {result.status}"
            )
        logger.info(
            f"💸 STRIPE_REFUND_CREATED: {result.refund_id} for {payment_reference_id} "
            f"({result.amount_cents} cents, {result.status})"
        )
        return result


stripe_refund_service = StripeRefundService()

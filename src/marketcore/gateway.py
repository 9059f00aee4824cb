import logging
from decimal import Decimal
import httpx
from marketcore.config import settings
from marketcore.schemas import PaymentIntent

logger = logging.getLogger("market.gateway")

class GatewayError(Exception):
    """Payment provider unreachable or the request was rejected."""

class PaymentGateway:
    """
    HTTP client for the Pix payment provider: payment intents, status polls
    and payouts. Every response is wrapped as {"success": ..., "data": ..., "error": ...}.
    """

    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self._client = httpx.AsyncClient(
            base_url=base_url or settings.GATEWAY_BASE_URL,
            headers={"Authorization": f"Bearer {api_key if api_key is not None else settings.GATEWAY_API_KEY}"},
            timeout=timeout or settings.GATEWAY_TIMEOUT,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _call(self, method: str, url: str, **kwargs) -> dict:
        try:
            resp = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as e:
            logger.error("[Gateway] %s %s failed: %s", method, url, e)
            raise GatewayError(f"gateway unreachable: {e}") from e

        try:
            body = resp.json()
        except ValueError:
            body = {}
        if not isinstance(body, dict):
            body = {}
        if resp.status_code >= 400 or not body.get("success", False):
            error = body.get("error") or f"HTTP {resp.status_code}"
            logger.warning("[Gateway] %s %s rejected: %s", method, url, error)
            raise GatewayError(error)
        return body.get("data") or {}

    async def create_payment(self, amount: Decimal, description: str) -> PaymentIntent:
        data = await self._call(
            "POST", "/payments",
            json={"amount": float(amount), "description": description},
        )
        logger.info("[Gateway] Payment %s created for %s", data.get("id"), amount)
        return PaymentIntent(
            id=str(data["id"]),
            amount=amount,
            description=description,
            qr_code_image=data.get("qrCodeImage"),
            copy_paste_code=data.get("copyPasteCode"),
            status=data.get("status", "PENDING"),
        )

    async def get_payment_status(self, payment_id: str) -> str:
        data = await self._call("GET", f"/payments/{payment_id}")
        return str(data.get("status", "")).upper()

    async def create_withdraw(
        self,
        amount: Decimal,
        pix_key: str,
        pix_key_type: str,
        idempotency_key: str,
    ) -> str | None:
        data = await self._call(
            "POST", "/withdrawals",
            json={"amount": float(amount), "pixKey": pix_key, "pixKeyType": pix_key_type},
            headers={"Idempotency-Key": idempotency_key},
        )
        logger.info("[Gateway] Withdraw %s of %s sent (key %s)", data.get("id"), amount, idempotency_key)
        return data.get("id")

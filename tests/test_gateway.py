import json
from decimal import Decimal

import httpx
import pytest

from marketcore.gateway import GatewayError, PaymentGateway


def _gateway(handler) -> PaymentGateway:
    return PaymentGateway(base_url="http://gateway.test/v1", api_key="k-123",
                          transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_create_payment_parses_presentation_payload(pix, gateway):
    intent = await gateway.create_payment(Decimal("50.00"), "Order: Camera")

    assert intent.id in pix.payments
    assert intent.amount == Decimal("50.00")
    assert intent.qr_code_image.endswith(".png")
    assert intent.copy_paste_code.startswith("00020126")
    request = pix.requests[0]
    assert request.headers["Authorization"] == "Bearer test-key"
    assert json.loads(request.content) == {"amount": 50.0, "description": "Order: Camera"}

@pytest.mark.asyncio
async def test_status_is_normalised_to_upper_case():
    def handler(request):
        return httpx.Response(200, json={"success": True, "data": {"status": "completed"}})

    gw = _gateway(handler)
    assert await gw.get_payment_status("pay_1") == "COMPLETED"
    await gw.aclose()

@pytest.mark.asyncio
async def test_envelope_failure_is_gateway_error():
    def handler(request):
        return httpx.Response(200, json={"success": False, "error": "merchant blocked"})

    gw = _gateway(handler)
    with pytest.raises(GatewayError, match="merchant blocked"):
        await gw.create_payment(Decimal("10"), "Order: x")
    await gw.aclose()

@pytest.mark.asyncio
async def test_http_error_without_body_is_gateway_error():
    def handler(request):
        return httpx.Response(500, text="Internal Server Error")

    gw = _gateway(handler)
    with pytest.raises(GatewayError, match="HTTP 500"):
        await gw.get_payment_status("pay_1")
    await gw.aclose()

@pytest.mark.asyncio
async def test_unreachable_gateway_is_gateway_error():
    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    gw = _gateway(handler)
    with pytest.raises(GatewayError, match="unreachable"):
        await gw.get_payment_status("pay_1")
    await gw.aclose()

@pytest.mark.asyncio
async def test_withdraw_carries_idempotency_key(pix, gateway):
    first = await gateway.create_withdraw(Decimal("50.00"), "123.456.789-00", "CPF", idempotency_key="order-1")
    again = await gateway.create_withdraw(Decimal("50.00"), "123.456.789-00", "CPF", idempotency_key="order-1")

    assert first == again
    assert len(pix.withdrawals) == 1
    assert pix.withdrawals["order-1"]["pixKeyType"] == "CPF"

import logging
from decimal import Decimal
from typing import Optional
from urllib.parse import urlparse

import httpx

from .errors import ProviderRejected, TransportFailure
from .models import RelayConfig
from .signing import NonceSource, canonical_json, sign_payload

logger = logging.getLogger(__name__)


class ProviderClient:
    """Signs and sends order-creation requests to the payment provider."""

    def __init__(
        self,
        config: RelayConfig,
        nonces: Optional[NonceSource] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        if urlparse(config.order_url).scheme != "https" and not config.allow_insecure:
            raise ValueError("provider order URL must use https")
        self._config = config
        self._nonces = nonces or NonceSource()
        self._transport = transport

    def build_payload(self, merchant_trade_no: str, amount: Decimal, currency: str) -> dict:
        return {
            "merchantTradeNo": merchant_trade_no,
            "totalAmount": f"{amount:.2f}",
            "currency": currency,
            "productType": "Payment",
            "goods": {
                "goodsType": "01",
                "goodsCategory": "D000",
                "referenceGoodsId": self._config.goods_reference_id,
                "goodsName": self._config.goods_name,
                "goodsDetail": self._config.goods_detail,
            },
        }

    def signed_request(self, payload: dict):
        body = canonical_json(payload)
        nonce = self._nonces.next()
        signature = sign_payload(self._config.api_secret.get_secret_value(), body, nonce)
        headers = {
            "Content-Type": "application/json",
            "BinancePay-Timestamp": nonce,
            "BinancePay-Certificate-SN": self._config.api_key,
            "BinancePay-Signature": signature,
        }
        return body, headers

    async def create_order(self, merchant_trade_no: str, amount: Decimal, currency: str) -> str:
        body, headers = self.signed_request(self.build_payload(merchant_trade_no, amount, currency))

        try:
            async with httpx.AsyncClient(transport=self._transport) as client:
                r = await client.post(
                    self._config.order_url,
                    content=body,
                    headers=headers,
                    timeout=self._config.timeout_seconds,
                )
        except httpx.TimeoutException:
            logger.warning("provider timeout for order %s", merchant_trade_no)
            raise TransportFailure("timeout")
        except httpx.TransportError as e:
            logger.warning("provider unreachable for order %s: %s", merchant_trade_no, type(e).__name__)
            raise TransportFailure("connection_error")

        try:
            result = r.json()
        except ValueError:
            logger.warning(
                "provider returned non-JSON body for order %s (HTTP %s)",
                merchant_trade_no, r.status_code,
            )
            raise TransportFailure("malformed_response")
        if not isinstance(result, dict) or "status" not in result:
            logger.warning("provider response missing status for order %s", merchant_trade_no)
            raise TransportFailure("malformed_response")

        if result["status"] == "SUCCESS" and r.is_success:
            data = result.get("data") or {}
            if not isinstance(data, dict):
                logger.warning("provider success with malformed data for order %s", merchant_trade_no)
                raise TransportFailure("malformed_response")
            pay_url = data.get("checkoutUrl") or data.get("qrContent")
            if not isinstance(pay_url, str) or not pay_url:
                logger.warning("provider success without pay URL for order %s", merchant_trade_no)
                raise TransportFailure("malformed_response")
            logger.info("provider accepted order %s", merchant_trade_no)
            return pay_url

        code = result.get("code")
        logger.warning(
            "provider rejected order %s (HTTP %s, code %s)",
            merchant_trade_no, r.status_code, code,
        )
        raise ProviderRejected(
            provider_code=str(code) if code is not None else None,
            provider_message=result.get("errorMessage"),
        )

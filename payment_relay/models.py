from datetime import datetime
from pydantic import BaseModel, ConfigDict, Field, SecretStr, field_validator
from typing import Literal, Optional

OrderStatus = Literal["PENDING", "SUCCEEDED", "FAILED"]


class CreateOrderRequest(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    # Range checks happen in the relay so every caller gets InvalidAmount.
    amount: float
    currency: str = Field(default="USD", min_length=3, max_length=3, pattern=r"^[A-Za-z]{3}$")
    idempotency_key: str = Field(alias="idempotencyKey", min_length=1, max_length=128)

    @field_validator("currency")
    @classmethod
    def upper_currency(cls, v: str) -> str:
        return v.upper()


class CreateOrderResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    pay_url: str = Field(alias="payUrl")


class OrderStatusResponse(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    merchant_trade_no: str = Field(alias="merchantTradeNo")
    status: OrderStatus
    pay_url: Optional[str] = Field(default=None, alias="payUrl")
    attempts: int


class PaymentOrderRecord(BaseModel):
    idempotency_key: str
    merchant_trade_no: str
    request_hash: str
    amount: str
    currency: str
    status: OrderStatus
    pay_url: Optional[str] = None
    attempts: int = 1
    last_error: Optional[str] = None
    created_at: datetime
    last_attempt_at: datetime


class RelayConfig(BaseModel):
    """Provider credentials and relay limits, built once at process start."""

    api_key: str
    api_secret: SecretStr
    order_url: str
    timeout_seconds: float = 10.0
    allow_insecure: bool = False
    in_flight_window_seconds: float = 60.0
    max_attempts: int = Field(default=3, ge=1)
    goods_reference_id: str = "ArocShop"
    goods_name: str = "Aroc Shop Order"
    goods_detail: str = "Order payment"

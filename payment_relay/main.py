from fastapi import Depends, FastAPI, HTTPException, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

import asyncio
import logging
import random
import uuid
from contextlib import asynccontextmanager

from .errors import PaymentError, ProviderRejected, TransportFailure
from .models import CreateOrderRequest, CreateOrderResponse, OrderStatusResponse, RelayConfig
from .relay import PaymentOrderRelay
from .store import InMemoryOrderStore, PostgresOrderStore
from . import settings

logging.basicConfig(
    level=settings.LOG_LEVEL,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    if not hasattr(app.state, "relay"):
        app.state.relay = build_relay()
    yield


app = FastAPI(title="Payment Order Relay", version="0.1.0", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.ALLOWED_ORIGINS or ["*"],
    allow_methods=["GET", "POST"],
    allow_headers=["*"],
)


def load_relay_config() -> RelayConfig:
    return RelayConfig(
        api_key=settings.BINANCE_API_KEY,
        api_secret=settings.BINANCE_API_SECRET,
        order_url=settings.PROVIDER_ORDER_URL,
        timeout_seconds=settings.PROVIDER_TIMEOUT_SECONDS,
        allow_insecure=settings.PROVIDER_ALLOW_INSECURE,
        in_flight_window_seconds=settings.IN_FLIGHT_WINDOW_SECONDS,
        max_attempts=settings.MAX_ATTEMPTS,
        goods_reference_id=settings.GOODS_REFERENCE_ID,
        goods_name=settings.GOODS_NAME,
        goods_detail=settings.GOODS_DETAIL,
    )


def build_relay() -> PaymentOrderRelay:
    config = load_relay_config()
    if not config.api_key or not config.api_secret.get_secret_value():
        logger.warning("provider credentials are not configured; order creation will be rejected upstream")

    if settings.ORDER_STORE == "postgres":
        store = PostgresOrderStore(settings.DATABASE_URL)
        store.init_schema()
    elif settings.ORDER_STORE == "memory":
        store = InMemoryOrderStore()
    else:
        raise ValueError(f"unknown ORDER_STORE {settings.ORDER_STORE!r}")

    logger.info("relay ready (store=%s, provider=%s)", settings.ORDER_STORE, config.order_url)
    return PaymentOrderRelay(config, store)


def get_relay(request: Request) -> PaymentOrderRelay:
    return request.app.state.relay


@app.exception_handler(PaymentError)
async def payment_error_handler(request: Request, exc: PaymentError):
    if isinstance(exc, ProviderRejected):
        logger.warning(
            "provider rejection returned to caller: code=%s message=%s",
            exc.provider_code, exc.provider_message,
        )
    elif isinstance(exc, TransportFailure):
        logger.warning("transport failure returned to caller: %s", exc.reason)
    return JSONResponse(status_code=exc.status_code, content={"detail": exc.message, "code": exc.code})


@app.exception_handler(RequestValidationError)
async def validation_error_handler(request: Request, exc: RequestValidationError):
    errors = [
        {"loc": list(e.get("loc", ())), "msg": e.get("msg")}
        for e in exc.errors()
    ]
    return JSONResponse(status_code=400, content={"detail": errors, "code": "invalid_request"})


@app.get("/health")
def health():
    return {"ok": True}


@app.post("/payment/orders", response_model=CreateOrderResponse)
async def create_order(req: CreateOrderRequest, relay: PaymentOrderRelay = Depends(get_relay)):
    pay_url = await relay.create_order(req)
    return CreateOrderResponse(pay_url=pay_url)


@app.get("/payment/orders/{idempotency_key}", response_model=OrderStatusResponse)
def get_order(idempotency_key: str, relay: PaymentOrderRelay = Depends(get_relay)):
    record = relay.get_order(idempotency_key)
    if not record:
        raise HTTPException(status_code=404, detail="Order not found")
    return OrderStatusResponse(
        merchant_trade_no=record.merchant_trade_no,
        status=record.status,
        pay_url=record.pay_url,
        attempts=record.attempts,
    )


async def provider_order_simulator(request: Request):
    """
    Local stand-in for the provider's order endpoint:
      - unsigned requests: FAIL
      - ~20%: slow response => client timeout
      - ~10%: declined
      - rest: SUCCESS with a checkout URL
    """
    if not request.headers.get("BinancePay-Signature") or not request.headers.get("BinancePay-Timestamp"):
        return JSONResponse(
            status_code=400,
            content={"status": "FAIL", "code": "400002", "errorMessage": "Signature missing"},
        )
    payload = await request.json()
    roll = random.random()

    if roll < 0.2:
        await asyncio.sleep(settings.PROVIDER_TIMEOUT_SECONDS * 2)
    elif roll < 0.3:
        return {"status": "FAIL", "code": "400201", "errorMessage": "Order declined"}

    prepay_id = uuid.uuid4().hex
    return {
        "status": "SUCCESS",
        "code": "000000",
        "data": {
            "prepayId": prepay_id,
            "checkoutUrl": f"https://pay.example/checkout/{payload.get('merchantTradeNo')}",
            "qrContent": f"https://pay.example/qr/{prepay_id}",
        },
    }


if settings.PROVIDER_SIMULATOR:
    app.add_api_route("/_provider/order", provider_order_simulator, methods=["POST"])


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=8000)

"""
Order Service — FastAPI エントリーポイント

注文の一覧・作成を orders テーブルに対して行う。
バックグラウンドではブローカーのキューを購読する（HTTP とは独立）。

状態（ストアとコンシューマー）はモジュールのグローバルではなく
app.state に持たせ、依存関係としてハンドラに渡す。

終了時は uvicorn が処理中のリクエストを捌き切ってから lifespan を抜けるので、
ブローカー接続とデータベース接続プールはその後で閉じられる。
"""

import logging
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict
from sqlalchemy.exc import SQLAlchemyError

from service_common.config import resolve_placeholders
from service_common.log import setup_logging
from service_common.runner import serve

from .broker import Backoff, BrokerConsumer
from .models import CreateOrderRequest
from .store import OrderStore

logger = logging.getLogger(__name__)

DEFAULT_BROKER_URL = "redis://:${BROKER_PASSWORD}@broker:6379/0"


def async_database_url(url: str) -> str:
    """postgres:// 形式の接続文字列を asyncpg ドライバ指定に書き換える。"""
    for prefix in ("postgres://", "postgresql://"):
        if url.startswith(prefix):
            return "postgresql+asyncpg://" + url[len(prefix):]
    return url


class Settings(BaseSettings):
    """環境変数から読む設定。フィールド名の大文字がそのまま環境変数名になる。"""

    database_url: str
    db_pool_size: int = 5
    broker_url: str = DEFAULT_BROKER_URL
    broker_queue: str = "orders_queue"
    broker_group: str = "order-service"
    broker_retry_base: float = 5.0
    broker_retry_multiplier: float = 2.0
    broker_retry_max: float | None = 60.0
    broker_retry_jitter: float = 0.1
    host: str = "0.0.0.0"
    port: int = 5000
    log_level: str = "INFO"

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_ignore_empty=True,
        validate_default=True,
    )

    @field_validator("database_url")
    @classmethod
    def use_asyncpg_driver(cls, v: str) -> str:
        return async_database_url(v)

    @field_validator("broker_url")
    @classmethod
    def resolve_broker_credentials(cls, v: str) -> str:
        return resolve_placeholders(v)

    @field_validator("broker_retry_max")
    @classmethod
    def non_positive_means_uncapped(cls, v: float | None) -> float | None:
        return v if v is not None and v > 0 else None

    def backoff(self) -> Backoff:
        return Backoff(
            base=self.broker_retry_base,
            multiplier=self.broker_retry_multiplier,
            max_delay=self.broker_retry_max,
            jitter=self.broker_retry_jitter,
        )


# ── 依存関係 ─────────────────────────────────────

def get_store(request: Request) -> OrderStore:
    return request.app.state.store


def get_consumer(request: Request) -> BrokerConsumer:
    return request.app.state.consumer


def create_app(
    settings: Settings | None = None,
    store: OrderStore | None = None,
    consumer: BrokerConsumer | None = None,
) -> FastAPI:
    settings = settings or Settings()
    store = store or OrderStore.from_url(settings.database_url, settings.db_pool_size)
    consumer = consumer or BrokerConsumer(
        settings.broker_url,
        settings.broker_queue,
        group=settings.broker_group,
        backoff=settings.backoff(),
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """起動時にブローカーのコンシューマーをバックグラウンドタスクとして開始する。"""
        consumer.start()
        try:
            yield
        finally:
            logger.info("Shutting down order-service...")
            try:
                await consumer.stop()
            finally:
                await store.dispose()

    app = FastAPI(title="Order Service", lifespan=lifespan)
    app.state.settings = settings
    app.state.store = store
    app.state.consumer = consumer

    @app.exception_handler(RequestValidationError)
    async def invalid_order(request: Request, exc: RequestValidationError):
        return JSONResponse({"error": "Invalid order data"}, status_code=400)

    @app.get("/orders")
    async def list_orders(store: OrderStore = Depends(get_store)):
        """全注文を新しい順に取得"""
        try:
            return await store.list_orders()
        except (SQLAlchemyError, OSError):
            logger.exception("Error fetching orders")
            return JSONResponse({"error": "Error fetching orders"}, status_code=500)

    @app.post("/orders", status_code=201)
    async def create_order(req: CreateOrderRequest, store: OrderStore = Depends(get_store)):
        """注文作成。product_name・quantity・price が揃っていなければ 400。"""
        if not req.is_complete():
            return JSONResponse({"error": "Invalid order data"}, status_code=400)
        try:
            return await store.create_order(
                req.product_name, req.quantity, req.price, req.order_date
            )
        except (SQLAlchemyError, OSError):
            logger.exception("Error creating new order")
            return JSONResponse({"error": "Error creating new order"}, status_code=500)

    @app.get("/health")
    async def health(consumer: BrokerConsumer = Depends(get_consumer)):
        return {"status": "ok", "service": "order-service", "broker": consumer.state.value}

    return app


def run() -> None:
    settings = Settings()
    setup_logging(settings.log_level)
    logger.info("Order Service starting on port %s", settings.port)
    serve("order_service.main:create_app", settings.host, settings.port)

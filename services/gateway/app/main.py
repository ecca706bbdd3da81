"""
API Gateway — FastAPI エントリーポイント

Gateway パターン:
  外部からのリクエストを受け取り、静的なルート表に従って
  バックエンドサービスへそのまま転送する。ビジネスロジックも状態も持たない。

  ┌──────────┐     ┌─────────┐     ┌─────────────────┐
  │  Client  │────▶│ Gateway │────▶│ Product Service │
  │          │     │         │────▶│ Order Service   │
  └──────────┘     └─────────┘     └─────────────────┘

  - 成功時 (2xx): バックエンドの JSON とステータスをそのまま返す
  - 失敗時 (接続エラー・タイムアウト・非 2xx): 固定メッセージで 500
    （バックエンドのエラー内容はログにだけ残す）
  - リトライもサーキットブレーカーも無い
"""

import logging
from contextlib import asynccontextmanager

import httpx
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse
from pydantic_settings import BaseSettings, SettingsConfigDict

from service_common.log import setup_logging
from service_common.runner import serve

logger = logging.getLogger(__name__)


class Settings(BaseSettings):
    products_service_url: str
    orders_service_url: str
    gateway_timeout: float = 10.0
    host: str = "0.0.0.0"
    port: int = 3000
    log_level: str = "INFO"

    model_config = SettingsConfigDict(case_sensitive=False, env_ignore_empty=True)


async def forward(client: httpx.AsyncClient, base_url: str, path: str, service_name: str):
    """
    バックエンドへ GET を転送する。

    成功したらバックエンドのボディとステータスをそのまま返す。
    どんな失敗も呼び出し側には同じ 500 に見える。
    """
    url = f"{base_url.rstrip('/')}{path}"
    try:
        resp = await client.get(url)
        resp.raise_for_status()
        body = resp.json()
    except (httpx.HTTPError, ValueError) as exc:
        logger.warning("Forwarding to %s failed (%s): %r", service_name, url, exc)
        return PlainTextResponse(f"Error connecting to {service_name}", status_code=500)
    return JSONResponse(body, status_code=resp.status_code)


def create_app(
    settings: Settings | None = None,
    transport: httpx.AsyncBaseTransport | None = None,
) -> FastAPI:
    settings = settings or Settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        app.state.http = httpx.AsyncClient(timeout=settings.gateway_timeout, transport=transport)
        yield
        await app.state.http.aclose()

    app = FastAPI(title="API Gateway", lifespan=lifespan)
    app.state.settings = settings

    @app.get("/", response_class=PlainTextResponse)
    async def root():
        return "API Gateway is running!"

    # ── 転送ルート ───────────────────────────────

    @app.get("/products")
    async def get_products(request: Request):
        """商品一覧を Product Service から取得"""
        return await forward(
            request.app.state.http, settings.products_service_url, "/products", "Product Service"
        )

    @app.get("/orders")
    async def get_orders(request: Request):
        """注文一覧を Order Service から取得"""
        return await forward(
            request.app.state.http, settings.orders_service_url, "/orders", "Order Service"
        )

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "api-gateway"}

    return app


def run() -> None:
    settings = Settings()
    setup_logging(settings.log_level)
    logger.info("API Gateway starting on port %s", settings.port)
    serve("gateway.main:create_app", settings.host, settings.port)

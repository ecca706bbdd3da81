"""
Product Service — FastAPI エントリーポイント

読み取り専用の商品一覧を返すだけのサービス。
永続化は無く、リクエストごとに同じ固定リストを返す。
"""

import logging

from fastapi import FastAPI
from pydantic_settings import BaseSettings, SettingsConfigDict

from service_common.log import setup_logging
from service_common.runner import serve

logger = logging.getLogger(__name__)

PRODUCTS: tuple[dict, ...] = (
    {"id": 1, "name": "Product A"},
    {"id": 2, "name": "Product B"},
)


class Settings(BaseSettings):
    host: str = "0.0.0.0"
    port: int = 4000
    log_level: str = "INFO"

    model_config = SettingsConfigDict(case_sensitive=False, env_ignore_empty=True)


def list_products() -> list[dict]:
    """呼び出しごとに新しいリストを作る（呼び出し側の変更が次回に漏れない）。"""
    return [dict(p) for p in PRODUCTS]


def create_app() -> FastAPI:
    app = FastAPI(title="Product Service")

    @app.get("/product_items")
    async def get_product_items():
        """商品一覧"""
        return list_products()

    # Gateway は同じパスで転送するので /products でも同じ一覧を返す
    @app.get("/products")
    async def get_products():
        return list_products()

    @app.get("/health")
    async def health():
        return {"status": "ok", "service": "product-service"}

    return app


def run() -> None:
    settings = Settings()
    setup_logging(settings.log_level)
    logger.info("Product Service starting on port %s", settings.port)
    serve("product_service.main:create_app", settings.host, settings.port)

"""
Order Service — リクエストモデル
"""

from datetime import datetime

from pydantic import BaseModel, Field


class CreateOrderRequest(BaseModel):
    """
    注文作成リクエスト

    必須項目の欠落は 422 ではなく 400 で返したいので、
    ここでは Optional にしておき、存在チェックはハンドラ側で行う。
    """
    product_name: str | None = None
    quantity: int | None = Field(default=None, gt=0, strict=True)
    price: float | None = Field(default=None, gt=0)
    order_date: datetime | None = None

    def is_complete(self) -> bool:
        return bool(self.product_name and self.quantity and self.price)

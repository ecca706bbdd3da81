"""
Order Service — 注文ストア

orders テーブルへの読み書き。スキーマは外部で用意されている前提。
id はデータベースが採番し、呼び出し側からは受け取らない。

    CREATE TABLE orders (
        id           SERIAL PRIMARY KEY,
        product_name TEXT          NOT NULL,
        quantity     INTEGER       NOT NULL,
        price        NUMERIC(10,2) NOT NULL,
        order_date   TIMESTAMPTZ   NOT NULL DEFAULT now()
    );
"""

from datetime import datetime, timezone

from sqlalchemy import text
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker


def _row_to_dict(row) -> dict:
    return {
        "id": row.id,
        "product_name": row.product_name,
        "quantity": row.quantity,
        "price": float(row.price),
        "order_date": row.order_date.isoformat() if row.order_date else None,
    }


class OrderStore:
    """注文テーブルへのアクセスをまとめたもの。接続プールは SQLAlchemy に任せる。"""

    def __init__(self, session_factory: sessionmaker, engine=None) -> None:
        self._session_factory = session_factory
        self._engine = engine

    @classmethod
    def from_url(cls, database_url: str, pool_size: int = 5) -> "OrderStore":
        engine = create_async_engine(database_url, echo=False, pool_size=pool_size)
        return cls(
            sessionmaker(engine, class_=AsyncSession, expire_on_commit=False),
            engine,
        )

    async def list_orders(self) -> list[dict]:
        """全注文を注文日時の新しい順に返す。"""
        async with self._session_factory() as session:
            result = await session.execute(
                text("""
                    SELECT id, product_name, quantity, price, order_date
                    FROM orders
                    ORDER BY order_date DESC
                """),
            )
            return [_row_to_dict(row) for row in result.fetchall()]

    async def create_order(
        self,
        product_name: str,
        quantity: int,
        price: float,
        order_date: datetime | None = None,
    ) -> dict:
        """
        注文を 1 行追加し、採番された id を含む行を返す。
        order_date が無ければ現在時刻を使う。
        """
        async with self._session_factory() as session:
            result = await session.execute(
                text("""
                    INSERT INTO orders (product_name, quantity, price, order_date)
                    VALUES (:product_name, :quantity, :price, :order_date)
                    RETURNING id, product_name, quantity, price, order_date
                """),
                {
                    "product_name": product_name,
                    "quantity": quantity,
                    "price": price,
                    "order_date": order_date or datetime.now(timezone.utc),
                },
            )
            row = result.fetchone()
            await session.commit()
            return _row_to_dict(row)

    async def dispose(self) -> None:
        if self._engine is not None:
            await self._engine.dispose()

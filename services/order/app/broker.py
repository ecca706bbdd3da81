"""
Order Service — ブローカー・コンシューマー (Redis Streams)

orders キュー（Redis Stream）をコンシューマーグループで購読する。
Pub/Sub と違い、Stream はサービスが落ちている間のメッセージも保持し、
XACK されるまでは未確認 (pending) として残る。

状態遷移:
    DISCONNECTED → CONNECTING → CONNECTED
         ▲              │            │
         └── 失敗 ──────┘            │
         └── 接続断 ─────────────────┘

- 接続に失敗したら指数バックオフ（ジッター付き）で待って再試行する。
  上限回数は無い。接続試行は常に 1 本だけ。
- ハンドラが正常に返ったメッセージだけを XACK する。
  ハンドラが例外を投げたらデッドレターキューへ移してから XACK する。
- 再接続時は、自分に配信済みで未確認のメッセージから処理し直す。
"""

import asyncio
import enum
import logging
import random
import socket
from collections.abc import Awaitable, Callable

import redis.asyncio as aioredis
from redis.exceptions import RedisError, ResponseError

logger = logging.getLogger(__name__)

MessageHandler = Callable[[str], Awaitable[None]]

# max_delay=None（上限なし）でも待ち時間はこれを超えない
UNCAPPED_DELAY_LIMIT = 24 * 60 * 60.0


class BrokerState(str, enum.Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"


class Backoff:
    """
    再接続の待ち時間

    delay(n) = min(max_delay, base * multiplier ** n) に
    [1 - jitter, 1] の乱数を掛ける。
    multiplier=1, jitter=0 なら固定間隔になる。
    max_delay=None なら上限なし（ただし UNCAPPED_DELAY_LIMIT で頭打ち）。
    """

    def __init__(
        self,
        base: float = 5.0,
        multiplier: float = 2.0,
        max_delay: float | None = 60.0,
        jitter: float = 0.1,
        rng: Callable[[], float] = random.random,
    ) -> None:
        if base < 0 or multiplier < 1 or not 0 <= jitter <= 1:
            raise ValueError("invalid backoff parameters")
        self.base = base
        self.multiplier = multiplier
        self.max_delay = max_delay
        self.jitter = jitter
        self._rng = rng

    def delay(self, attempt: int) -> float:
        limit = UNCAPPED_DELAY_LIMIT if self.max_delay is None else self.max_delay
        try:
            delay = self.base * self.multiplier ** attempt
        except OverflowError:
            delay = limit
        delay = min(delay, limit)
        return delay * (1 - self.jitter * self._rng())


async def log_message(body: str) -> None:
    """デフォルトのハンドラ。受信したメッセージをログに出すだけ。"""
    logger.info("Received message from broker: %s", body)


class BrokerConsumer:
    """キュー 1 本を購読するバックグラウンドコンシューマー"""

    def __init__(
        self,
        url: str,
        queue: str,
        group: str = "order-service",
        consumer_name: str | None = None,
        handler: MessageHandler = log_message,
        backoff: Backoff | None = None,
        batch_size: int = 10,
        block_ms: int = 1000,
        client_factory: Callable[..., aioredis.Redis] = aioredis.from_url,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self.url = url
        self.queue = queue
        self.dead_letter_queue = f"{queue}.dead"
        self.group = group
        self.consumer_name = consumer_name or socket.gethostname()
        self.handler = handler
        self.backoff = backoff or Backoff()
        self.batch_size = batch_size
        self.block_ms = block_ms
        self.state = BrokerState.DISCONNECTED
        self.attempts = 0
        self._client_factory = client_factory
        self._sleep = sleep
        self._redis: aioredis.Redis | None = None
        self._stopping = asyncio.Event()
        self._task: asyncio.Task | None = None

    # ── ライフサイクル ───────────────────────────

    def start(self) -> asyncio.Task:
        self._stopping.clear()
        self._task = asyncio.create_task(self.run(), name="broker-consumer")
        self._task.add_done_callback(self._on_task_done)
        return self._task

    def _on_task_done(self, task: asyncio.Task) -> None:
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error("Broker consumer stopped unexpectedly", exc_info=exc)

    async def stop(self) -> None:
        """購読を止め、接続を閉じる。"""
        self._stopping.set()
        if self._task is not None:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            except Exception:
                logger.warning("Broker consumer had already failed", exc_info=True)
            self._task = None
        await self._close()
        logger.info("Broker connection closed")

    async def run(self) -> None:
        """接続 → 購読 → 接続断なら再接続、を止められるまで繰り返す。"""
        failures = 0
        while not self._stopping.is_set():
            self.state = BrokerState.CONNECTING
            self.attempts += 1
            try:
                await self._connect()
            except (RedisError, OSError) as exc:
                self.state = BrokerState.DISCONNECTED
                delay = self.backoff.delay(failures)
                failures += 1
                logger.error(
                    "Error connecting to broker, retrying in %.1f seconds: %s", delay, exc
                )
                await self._sleep(delay)
                continue

            failures = 0
            self.state = BrokerState.CONNECTED
            logger.info("Connected to broker, waiting for messages in queue: %s", self.queue)
            try:
                await self._consume()
            except (RedisError, OSError) as exc:
                logger.warning("Lost broker connection: %s", exc)
            finally:
                await self._close()
                self.state = BrokerState.DISCONNECTED

    # ── 内部処理 ─────────────────────────────────

    async def _connect(self) -> None:
        client = self._client_factory(self.url, decode_responses=True)
        try:
            await client.ping()
            await self._ensure_queue(client)
        except BaseException:
            await client.aclose()
            raise
        self._redis = client

    async def _ensure_queue(self, client: aioredis.Redis) -> None:
        """Stream とコンシューマーグループが無ければ作る（冪等）。"""
        try:
            await client.xgroup_create(self.queue, self.group, id="0", mkstream=True)
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    async def _consume(self) -> None:
        # まず未確認のまま残っている自分宛てのメッセージを処理する
        while await self._read("0"):
            pass
        while not self._stopping.is_set():
            await self._read(">")

    async def _read(self, start_id: str) -> int:
        entries = await self._redis.xreadgroup(
            self.group,
            self.consumer_name,
            {self.queue: start_id},
            count=self.batch_size,
            block=self.block_ms if start_id == ">" else None,
        )
        handled = 0
        for _stream, messages in entries or []:
            for message_id, fields in messages:
                await self._dispatch(message_id, fields or {})
                handled += 1
        return handled

    async def _dispatch(self, message_id: str, fields: dict) -> None:
        body = fields.get("body", "")
        try:
            await self.handler(body)
        except Exception:
            logger.exception("Failed to handle message %s, moving to %s", message_id, self.dead_letter_queue)
            await self._redis.xadd(
                self.dead_letter_queue, {"body": body, "source_id": message_id}
            )
        await self._redis.xack(self.queue, self.group, message_id)

    async def _close(self) -> None:
        if self._redis is not None:
            client, self._redis = self._redis, None
            await client.aclose()

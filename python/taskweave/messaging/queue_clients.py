"""Queue clients implementing IQueueClient.

- InMemoryQueueClient: asyncio.Queue per topic, for tests and local runs.
- RedisStreamQueueClient: durable delivery over Redis Streams with
  consumer groups (XREADGROUP / XACK). Delayed messages wait in a sorted
  set until they are due. Entries left pending by a crashed consumer are
  re-read on start and reclaimed from other consumers with XAUTOCLAIM.

Each consumer runs up to ``prefetch`` deliveries of one topic concurrently.

Both clients implement the same requeue contract: ``nack(requeue=True)``
puts the message back with ``retry_count + 1``; ``nack(requeue=False)``
moves it to the ``tasks.dead_letter`` topic.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Set, Tuple, Union

import redis.asyncio as redis
from pydantic import ValidationError
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import ResponseError
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from taskweave.exceptions import QueueError
from taskweave.interfaces.queue import DEAD_LETTER_TOPIC, DeliveryCallback, QueueMessage

logger = logging.getLogger(__name__)


def _requeued_body(body: Union[str, bytes]) -> Optional[str]:
    """Body with retry_count advanced, or None if it is not a QueueMessage."""
    try:
        message = QueueMessage.model_validate_json(body)
    except ValidationError:
        return None
    return message.next_retry().model_dump_json()


def _delay_seconds(message: QueueMessage) -> float:
    if message.scheduled_for is None:
        return 0.0
    scheduled = message.scheduled_for
    if scheduled.tzinfo is None:
        scheduled = scheduled.replace(tzinfo=timezone.utc)
    return max(0.0, (scheduled - datetime.now(timezone.utc)).total_seconds())


# ── In-memory ────────────────────────────────────────────────────────


class MemoryDelivery:
    """Delivery handle for InMemoryQueueClient."""

    def __init__(self, client: "InMemoryQueueClient", topic: str, body: str) -> None:
        self._client = client
        self.topic = topic
        self.body = body
        self.settled = False

    async def ack(self) -> None:
        if self.settled:
            return
        self.settled = True
        self._client.acked.append((self.topic, self.body))

    async def nack(self, requeue: bool) -> None:
        if self.settled:
            return
        self.settled = True
        self._client.nacked.append((self.topic, self.body, requeue))
        new_body = _requeued_body(self.body) if requeue else None
        if new_body is not None:
            self._client._queue(self.topic).put_nowait(new_body)
        else:
            self._client.dead_letters.append((self.topic, self.body))


class InMemoryQueueClient:
    """Single-process queue with ack/nack bookkeeping."""

    def __init__(self, prefetch: int = 10) -> None:
        self.prefetch = prefetch
        self._queues: Dict[str, asyncio.Queue] = {}
        self._consumers: Dict[str, asyncio.Task] = {}
        self._in_flight: Dict[str, int] = {}
        self._delayed: set = set()
        self.connected = False
        self.published: List[Tuple[str, QueueMessage]] = []
        self.acked: List[Tuple[str, str]] = []
        self.nacked: List[Tuple[str, str, bool]] = []
        self.dead_letters: List[Tuple[str, str]] = []

    async def connect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        for tag in list(self._consumers):
            await self.cancel(tag)
        for pending in list(self._delayed):
            pending.cancel()
        self.connected = False

    async def publish(self, topic: str, message: QueueMessage) -> bool:
        self.published.append((topic, message))
        body = message.model_dump_json()
        delay = _delay_seconds(message)
        if delay > 0:
            pending = asyncio.create_task(self._publish_later(topic, body, delay))
            self._delayed.add(pending)
            pending.add_done_callback(self._delayed.discard)
        else:
            self._queue(topic).put_nowait(body)
        return True

    async def publish_raw(self, topic: str, body: str) -> None:
        """Enqueue an arbitrary body, bypassing validation."""
        self._queue(topic).put_nowait(body)

    async def consume(self, topic: str, callback: DeliveryCallback) -> str:
        tag = f"{topic}:{uuid.uuid4().hex[:8]}"
        self._consumers[tag] = asyncio.create_task(self._consume_loop(topic, callback))
        return tag

    async def cancel(self, consumer_tag: str) -> None:
        consumer = self._consumers.pop(consumer_tag, None)
        if consumer is not None:
            consumer.cancel()
            await asyncio.gather(consumer, return_exceptions=True)

    async def join(self, topic: str) -> None:
        """Wait until every message put on *topic* has been settled."""
        await self._queue(topic).join()

    def depth(self, topic: str) -> int:
        return self._queue(topic).qsize()

    async def stats(self, topic: str) -> Dict[str, Any]:
        return {
            "topic": topic,
            "message_count": self.depth(topic),
            "pending_count": self._in_flight.get(topic, 0),
            "consumer_count": sum(1 for tag in self._consumers if tag.startswith(f"{topic}:")),
        }

    async def purge(self, topic: str) -> int:
        queue = self._queue(topic)
        purged = 0
        while not queue.empty():
            queue.get_nowait()
            queue.task_done()
            purged += 1
        return purged

    def _queue(self, topic: str) -> asyncio.Queue:
        if topic not in self._queues:
            self._queues[topic] = asyncio.Queue()
        return self._queues[topic]

    async def _publish_later(self, topic: str, body: str, delay: float) -> None:
        await asyncio.sleep(delay)
        self._queue(topic).put_nowait(body)

    async def _consume_loop(self, topic: str, callback: DeliveryCallback) -> None:
        queue = self._queue(topic)
        slots = asyncio.Semaphore(self.prefetch)
        workers: Set[asyncio.Task] = set()
        try:
            while True:
                await slots.acquire()
                try:
                    body = await queue.get()
                except BaseException:
                    slots.release()
                    raise
                worker = asyncio.create_task(self._deliver(topic, body, callback, slots))
                workers.add(worker)
                worker.add_done_callback(workers.discard)
        finally:
            for worker in list(workers):
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

    async def _deliver(
        self, topic: str, body: str, callback: DeliveryCallback, slots: asyncio.Semaphore
    ) -> None:
        delivery = MemoryDelivery(self, topic, body)
        self._in_flight[topic] = self._in_flight.get(topic, 0) + 1
        try:
            await callback(delivery)
        except Exception:
            logger.exception("Consumer callback failed on %s", topic)
        finally:
            self._in_flight[topic] -= 1
            if not delivery.settled:
                await delivery.nack(requeue=False)
            self._queue(topic).task_done()
            slots.release()


# ── Redis Streams ────────────────────────────────────────────────────


class RedisDelivery:
    """Delivery handle for one stream entry."""

    def __init__(self, client: "RedisStreamQueueClient", topic: str, entry_id: str, body: str) -> None:
        self._client = client
        self.topic = topic
        self.entry_id = entry_id
        self.body = body
        self.settled = False

    async def ack(self) -> None:
        if not self.settled:
            self.settled = True
            await self._client._ack(self.topic, self.entry_id)

    async def nack(self, requeue: bool) -> None:
        if not self.settled:
            self.settled = True
            await self._client._nack(self.topic, self.entry_id, self.body, requeue)


class RedisStreamQueueClient:
    """Durable queue client over Redis Streams.

    One stream per topic; every consumer joins the same consumer group so
    multiple processes share the work. Connection attempts are retried
    with tenacity; a dropped connection inside a consumer loop is retried
    after ``reconnect_delay`` seconds.

    A consumer first re-reads its own pending entries (delivered before a
    restart but never acknowledged), then every ``claim_interval`` seconds
    takes over entries that sat unacknowledged with any consumer for
    longer than ``claim_idle`` seconds. A cancelled delivery is left
    pending so it can be recovered that way.
    """

    DELAYED_KEY = "taskweave:delayed"

    def __init__(
        self,
        url: str = "redis://localhost:6379/0",
        group: str = "taskweave",
        consumer: str = "taskweave-1",
        *,
        block_ms: int = 1000,
        batch_size: int = 10,
        prefetch: int = 10,
        claim_idle: float = 900.0,
        claim_interval: float = 60.0,
        connect_attempts: int = 5,
        reconnect_delay: float = 5.0,
        client: Optional[Any] = None,
    ) -> None:
        self.url = url
        self.group = group
        self.consumer = consumer
        self.block_ms = block_ms
        self.batch_size = batch_size
        self.prefetch = prefetch
        self.claim_idle = claim_idle
        self.claim_interval = claim_interval
        self.connect_attempts = connect_attempts
        self.reconnect_delay = reconnect_delay
        self._redis = client
        self._consumers: Dict[str, asyncio.Task] = {}
        self._pump: Optional[asyncio.Task] = None

    async def connect(self) -> None:
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_attempt(self.connect_attempts),
                wait=wait_fixed(self.reconnect_delay),
                retry=retry_if_exception_type((RedisConnectionError, OSError)),
                reraise=True,
            ):
                with attempt:
                    if self._redis is None:
                        self._redis = redis.from_url(self.url, decode_responses=True)
                    await self._redis.ping()
        except (RedisConnectionError, OSError) as exc:
            raise QueueError(f"Cannot connect to Redis at {self.url}: {exc}") from exc

        self._pump = asyncio.create_task(self._pump_delayed())
        logger.info("Connected to Redis queue at %s", self.url)

    async def close(self) -> None:
        for tag in list(self._consumers):
            await self.cancel(tag)
        if self._pump is not None:
            self._pump.cancel()
            await asyncio.gather(self._pump, return_exceptions=True)
            self._pump = None
        if self._redis is not None:
            await self._redis.aclose()
            self._redis = None

    async def publish(self, topic: str, message: QueueMessage) -> bool:
        redis_client = self._require()
        body = message.model_dump_json()
        delay = _delay_seconds(message)
        try:
            if delay > 0:
                due = datetime.now(timezone.utc).timestamp() + delay
                member = json.dumps({"topic": topic, "body": body})
                await redis_client.zadd(self.DELAYED_KEY, {member: due})
            else:
                await redis_client.xadd(topic, {"body": body, "priority": str(message.priority_value)})
        except RedisConnectionError as exc:
            logger.error("Failed to publish %s to %s: %s", message.task_id, topic, exc)
            return False
        return True

    async def consume(self, topic: str, callback: DeliveryCallback) -> str:
        await self._ensure_group(topic)
        tag = f"{topic}:{uuid.uuid4().hex[:8]}"
        self._consumers[tag] = asyncio.create_task(self._consume_loop(topic, callback))
        return tag

    async def cancel(self, consumer_tag: str) -> None:
        consumer = self._consumers.pop(consumer_tag, None)
        if consumer is not None:
            consumer.cancel()
            await asyncio.gather(consumer, return_exceptions=True)

    # ── Internal helpers ─────────────────────────────────────────────

    def _require(self) -> Any:
        if self._redis is None:
            raise QueueError("Redis queue client is not connected")
        return self._redis

    async def _ensure_group(self, topic: str) -> None:
        try:
            await self._require().xgroup_create(topic, self.group, id="0", mkstream=True)
        except ResponseError as exc:
            if "BUSYGROUP" not in str(exc):
                raise

    async def _consume_loop(self, topic: str, callback: DeliveryCallback) -> None:
        loop = asyncio.get_running_loop()
        slots = asyncio.Semaphore(self.prefetch)
        in_flight: Dict[str, asyncio.Task] = {}
        pending_from: Optional[str] = "0"
        claim_from = "0-0"
        next_claim = loop.time()
        try:
            while True:
                try:
                    if pending_from is not None:
                        entries = await self._read(topic, pending_from, block=None)
                        pending_from = entries[-1][0] if entries else None
                    elif loop.time() >= next_claim:
                        next_claim = loop.time() + self.claim_interval
                        claim_from, entries = await self._claim_stale(topic, claim_from)
                    else:
                        entries = await self._read(topic, ">", block=self.block_ms)
                except RedisConnectionError as exc:
                    logger.warning("Lost Redis connection on %s: %s", topic, exc)
                    await asyncio.sleep(self.reconnect_delay)
                    continue

                for entry_id, fields in entries:
                    if entry_id in in_flight:
                        continue
                    if fields is None:
                        # Pending entry whose stream record was trimmed
                        await self._ack(topic, entry_id)
                        continue
                    await slots.acquire()
                    delivery = RedisDelivery(self, topic, entry_id, fields.get("body", ""))
                    worker = asyncio.create_task(self._deliver(delivery, callback, slots))
                    in_flight[entry_id] = worker
                    worker.add_done_callback(lambda _done, eid=entry_id: in_flight.pop(eid, None))
        finally:
            workers = list(in_flight.values())
            for worker in workers:
                worker.cancel()
            await asyncio.gather(*workers, return_exceptions=True)

    async def _deliver(
        self, delivery: RedisDelivery, callback: DeliveryCallback, slots: asyncio.Semaphore
    ) -> None:
        try:
            try:
                await callback(delivery)
            except Exception:
                logger.exception("Consumer callback failed on %s", delivery.topic)
            if not delivery.settled:
                await delivery.nack(requeue=False)
        finally:
            slots.release()

    async def _read(self, topic: str, start: str, block: Optional[int]) -> List[Tuple[str, Any]]:
        """Entries from XREADGROUP; ``start="0"`` re-reads this consumer's pending ones."""
        response = await self._require().xreadgroup(
            self.group, self.consumer, {topic: start},
            count=self.batch_size, block=block,
        )
        entries: List[Tuple[str, Any]] = []
        for _stream, stream_entries in response or []:
            entries.extend(stream_entries)
        if start != ">" and entries:
            logger.info("Recovering %d pending entries on %s", len(entries), topic)
        return entries

    async def _claim_stale(self, topic: str, start: str) -> Tuple[str, List[Tuple[str, Any]]]:
        """Take over entries idle longer than ``claim_idle`` with any consumer."""
        response = await self._require().xautoclaim(
            topic, self.group, self.consumer,
            min_idle_time=int(self.claim_idle * 1000),
            start_id=start, count=self.batch_size,
        )
        next_start, entries = response[0], list(response[1])
        if entries:
            logger.info("Claimed %d stale entries on %s", len(entries), topic)
        return next_start, entries

    async def stats(self, topic: str) -> Dict[str, Any]:
        redis_client = self._require()
        try:
            groups = await redis_client.xinfo_groups(topic)
        except ResponseError:
            groups = []
        group = next((g for g in groups if g.get("name") == self.group), None)
        if group is None:
            return {"topic": topic, "message_count": 0, "pending_count": 0, "consumer_count": 0}
        lag = group.get("lag")
        if lag is None:
            lag = await redis_client.xlen(topic)
        return {
            "topic": topic,
            "message_count": int(lag),
            "pending_count": int(group.get("pending", 0)),
            "consumer_count": int(group.get("consumers", 0)),
        }

    async def purge(self, topic: str) -> int:
        # Trimming keeps the consumer group; pending ids of trimmed
        # records come back with no fields and are acknowledged on read.
        return int(await self._require().xtrim(topic, maxlen=0, approximate=False))

    async def _ack(self, topic: str, entry_id: str) -> None:
        await self._require().xack(topic, self.group, entry_id)

    async def _nack(self, topic: str, entry_id: str, body: str, requeue: bool) -> None:
        redis_client = self._require()
        new_body = _requeued_body(body) if requeue else None
        if new_body is not None:
            await redis_client.xadd(topic, {"body": new_body})
        else:
            await redis_client.xadd(DEAD_LETTER_TOPIC, {"body": body, "source_topic": topic})
        await redis_client.xack(topic, self.group, entry_id)

    async def _pump_delayed(self) -> None:
        """Move due delayed messages onto their streams."""
        while True:
            try:
                redis_client = self._require()
                now = datetime.now(timezone.utc).timestamp()
                due = await redis_client.zrangebyscore(self.DELAYED_KEY, 0, now)
                for member in due:
                    if await redis_client.zrem(self.DELAYED_KEY, member):
                        item = json.loads(member)
                        await redis_client.xadd(item["topic"], {"body": item["body"]})
            except RedisConnectionError as exc:
                logger.warning("Delayed message pump lost connection: %s", exc)
                await asyncio.sleep(self.reconnect_delay)
                continue
            await asyncio.sleep(1.0)

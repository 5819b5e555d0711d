# store_api/dispatch.py

import asyncio
import json
import logging
from dataclasses import dataclass

import redis
from aiokafka import AIOKafkaProducer
from store_api import settings
from store_api.broadcast import ProductUpdateBroadcaster, broadcaster
from store_api.cache import get_redis, invalidate_cache
from store_api.models import utcnow

logger = logging.getLogger(__name__)


@dataclass
class SideEffect:
    action: str  # "notify" or "invalidate"
    payload: dict | list


class SideEffectDispatcher:
    """
    Queue of post-commit side effects consumed by a background worker.

    notify() and invalidate() only enqueue, so a request handler never waits
    on Redis, SSE clients or Kafka, and a failure there never reaches it.
    """

    def __init__(
        self,
        redis_client: redis.Redis,
        product_broadcaster: ProductUpdateBroadcaster,
        producer: AIOKafkaProducer | None = None,
        topic: str = settings.ORDER_EVENTS_TOPIC,
    ):
        self.redis_client = redis_client
        self.broadcaster = product_broadcaster
        self.producer = producer
        self.topic = topic
        self.queue: asyncio.Queue[SideEffect] = asyncio.Queue()

    def notify(self, kind: str, subject: str, **data) -> None:
        event = {"kind": kind, "subject": subject, "timestamp": utcnow().isoformat(), **data}
        self._enqueue(SideEffect("notify", event))

    def invalidate(self, cache_keys: list[str]) -> None:
        self._enqueue(SideEffect("invalidate", list(cache_keys)))

    def _enqueue(self, effect: SideEffect) -> None:
        try:
            self.queue.put_nowait(effect)
        except Exception as e:
            logger.error(f"Failed to queue {effect.action} side effect: {e}")

    async def handle(self, effect: SideEffect) -> None:
        if effect.action == "invalidate":
            for key in effect.payload:
                invalidate_cache(self.redis_client, key)
            return

        event = effect.payload
        if event["kind"].startswith("product_"):
            self.broadcaster.publish(self.redis_client, {
                "type": event["kind"],
                "slug": event["subject"],
                "name": event.get("name"),
                "timestamp": event["timestamp"],
            })

        if self.producer is not None:
            await self.producer.send_and_wait(self.topic, json.dumps(event).encode("utf-8"))
            logger.info(f"Produced {event['kind']} event for {event['subject']}.")

    async def drain(self) -> None:
        """Handle everything currently queued, then return."""
        while not self.queue.empty():
            await self._handle_safely(self.queue.get_nowait())

    async def run(self) -> None:
        """Worker loop; runs until cancelled."""
        logger.info("Side-effect worker started.")
        while True:
            effect = await self.queue.get()
            await self._handle_safely(effect)

    async def _handle_safely(self, effect: SideEffect) -> None:
        try:
            await self.handle(effect)
        except Exception as e:
            logger.error(f"Side effect {effect.action} failed: {e}")
        finally:
            self.queue.task_done()


dispatcher = SideEffectDispatcher(get_redis(), broadcaster)

def get_dispatcher() -> SideEffectDispatcher:
    return dispatcher

# store_api/broadcast.py

import asyncio
import json
import logging
import uuid

import redis
from store_api.cache import LAST_PRODUCT_UPDATE_KEY

logger = logging.getLogger(__name__)

LAST_UPDATE_TTL_SECONDS = 3600
KEEPALIVE_SECONDS = 15
# updates held per slow client before the oldest are dropped
SUBSCRIBER_QUEUE_SIZE = 100


def format_sse(data: dict) -> str:
    return f"data: {json.dumps(data)}\n\n"


class ProductUpdateBroadcaster:
    """
    Fan-out of product update events to every connected SSE client.

    Each subscriber owns a bounded asyncio.Queue; a slow client loses its
    oldest updates first. The last published update is also stored in Redis
    so a client connecting later receives it first.
    """

    def __init__(self):
        self.subscribers: dict[str, asyncio.Queue] = {}

    def subscribe(self) -> tuple[str, asyncio.Queue]:
        client_id = uuid.uuid4().hex
        queue: asyncio.Queue = asyncio.Queue(maxsize=SUBSCRIBER_QUEUE_SIZE)
        self.subscribers[client_id] = queue
        logger.info(f"SSE client {client_id} connected. Clients: {len(self.subscribers)}")
        return client_id, queue

    def unsubscribe(self, client_id: str) -> None:
        if self.subscribers.pop(client_id, None) is not None:
            logger.info(f"SSE client {client_id} disconnected. Clients: {len(self.subscribers)}")

    def publish(self, client: redis.Redis, data: dict) -> None:
        for queue in list(self.subscribers.values()):
            if queue.full():
                queue.get_nowait()
            queue.put_nowait(data)

        try:
            client.set(LAST_PRODUCT_UPDATE_KEY, json.dumps(data), ex=LAST_UPDATE_TTL_SECONDS)
        except redis.RedisError as e:
            logger.error(f"Error storing last product update: {e}")

    def last_update(self, client: redis.Redis) -> dict | None:
        try:
            raw = client.get(LAST_PRODUCT_UPDATE_KEY)
            return json.loads(raw) if raw else None
        except (redis.RedisError, ValueError) as e:
            logger.error(f"Error reading last product update: {e}")
            return None

    async def stream(self, request, client: redis.Redis):
        """Async generator of SSE frames for one client; ends when the client disconnects."""
        client_id, queue = self.subscribe()
        try:
            yield format_sse({"type": "connection", "message": "Connected to product updates"})

            last = self.last_update(client)
            if last:
                yield format_sse(last)

            while not await request.is_disconnected():
                try:
                    data = await asyncio.wait_for(queue.get(), timeout=KEEPALIVE_SECONDS)
                except asyncio.TimeoutError:
                    yield ": keepalive\n\n"
                    continue
                yield format_sse(data)
        finally:
            self.unsubscribe(client_id)


broadcaster = ProductUpdateBroadcaster()

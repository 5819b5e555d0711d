# store_api/messaging.py

import asyncio
import logging

from aiokafka import AIOKafkaProducer
from aiokafka.admin import AIOKafkaAdminClient, NewTopic
from aiokafka.errors import KafkaError, TopicAlreadyExistsError
from store_api import settings

logger = logging.getLogger(__name__)

TOPIC_ATTEMPTS = 5
TOPIC_RETRY_SECONDS = 10


async def ensure_order_events_topic(topic: str = settings.ORDER_EVENTS_TOPIC) -> None:
    """
    Make sure the order events topic exists before the producer starts.

    The broker may still be starting when the API boots, so connection and
    leadership errors are retried; an existing topic counts as success.
    """
    admin_client = AIOKafkaAdminClient(bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS)
    started = False
    try:
        for attempt in range(1, TOPIC_ATTEMPTS + 1):
            try:
                if not started:
                    await admin_client.start()
                    started = True
                await admin_client.create_topics([NewTopic(name=topic, num_partitions=1, replication_factor=1)])
                logger.info(f"Topic '{topic}' created.")
                return
            except TopicAlreadyExistsError:
                logger.info(f"Topic '{topic}' already exists.")
                return
            except KafkaError as e:
                logger.warning(f"Kafka not ready ({e}), attempt {attempt}/{TOPIC_ATTEMPTS}")
                await asyncio.sleep(TOPIC_RETRY_SECONDS)
        raise RuntimeError(f"Could not create Kafka topic '{topic}' after {TOPIC_ATTEMPTS} attempts.")
    finally:
        await admin_client.close()


async def start_producer() -> AIOKafkaProducer:
    producer = AIOKafkaProducer(bootstrap_servers=settings.KAFKA_BOOTSTRAP_SERVERS)
    await producer.start()
    logger.info("Kafka producer started.")
    return producer

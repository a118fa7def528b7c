import json
import logging

from django.conf import settings
from kafka import KafkaConsumer, KafkaProducer
from kafka.errors import KafkaError

logger = logging.getLogger(__name__)


def get_producer():
    try:
        producer = KafkaProducer(
            bootstrap_servers=settings.KAFKA_BROKERS,
            key_serializer=lambda k: k.encode("utf-8"),
            value_serializer=lambda v: json.dumps(v, ensure_ascii=False).encode("utf-8"),
            acks="all",  # Ждать подтверждения от всех реплик
            retries=3,
        )
        return producer
    except KafkaError as e:
        logger.error(f"Failed to create Kafka producer: {e}")
        return None


def get_consumer(*topics, group_id):
    # Значения остаются байтами: декодирование и коммит оффсетов делает QueueConsumer
    try:
        consumer = KafkaConsumer(
            *topics,
            bootstrap_servers=settings.KAFKA_BROKERS,
            group_id=group_id,
            auto_offset_reset="earliest",
            enable_auto_commit=False,
        )
        return consumer
    except KafkaError as e:
        logger.error(f"Failed to create Kafka consumer: {e}")
        return None

import logging
import signal

from django.core.management.base import BaseCommand
from orders.conf import get_service_settings
from orders.consumer import QueueConsumer
from orders.kafka_client.client import get_consumer
from orders.repository import OrderStore

logger = logging.getLogger(__name__)


def build_consumer(service_settings, store, start_delay=0.0):
    return QueueConsumer(
        lambda: get_consumer(
            service_settings.kafka_topic, group_id=service_settings.kafka_group_id
        ),
        store,
        timeout=service_settings.consumer_timeout,
        retry_delay=service_settings.consumer_retry_delay,
        poll_timeout=service_settings.consumer_poll_timeout,
        start_delay=start_delay,
    )


def stop_on_signals(consumer):
    def handler(signum, frame):
        logger.info(f"Received signal {signum}, stopping Kafka consumer...")
        consumer.stop()

    signal.signal(signal.SIGINT, handler)
    signal.signal(signal.SIGTERM, handler)


class Command(BaseCommand):
    help = "Runs Kafka consumer that ingests orders into the database"

    def handle(self, *args, **options):
        service_settings = get_service_settings()
        consumer = build_consumer(service_settings, OrderStore())
        stop_on_signals(consumer)

        self.stdout.write(
            f"Starting Kafka consumer for topic '{service_settings.kafka_topic}'..."
        )
        consumer.run()
        self.stdout.write(self.style.SUCCESS("Kafka consumer stopped."))

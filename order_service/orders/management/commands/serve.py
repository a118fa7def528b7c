import logging

from django.conf import settings
from django.core.management import call_command
from django.core.management.base import BaseCommand, CommandError
from django.db import DatabaseError
from orders.cache import OrderCache
from orders.conf import get_service_settings
from orders.exceptions import OrderServiceError, TransportError
from orders.management.commands.run_kafka_consumer import build_consumer
from orders.repository import OrderStore

logger = logging.getLogger(__name__)


class Command(BaseCommand):
    help = "Runs the order service: cache warm-up, Kafka consumer and HTTP API"

    def add_arguments(self, parser):
        parser.add_argument("addrport", nargs="?", default=settings.HTTP_ADDR)
        parser.add_argument(
            "--no-consumer",
            action="store_true",
            help="Serve the HTTP API without ingesting from Kafka",
        )

    def handle(self, *args, **options):
        service_settings = get_service_settings()
        store = OrderStore()
        cache = OrderCache(ttl=service_settings.cache_ttl)

        try:
            store.ping()
            cache.ping()
        except TransportError as e:
            raise CommandError(str(e)) from e
        self.stdout.write(self.style.SUCCESS("Connected to database and cache."))

        try:
            call_command("migrate", interactive=False, verbosity=0)
        except DatabaseError as e:
            raise CommandError(f"Failed to create tables: {e}") from e

        self.preload_cache(store, cache)

        consumer = None
        if not options["no_consumer"]:
            consumer = build_consumer(
                service_settings,
                store,
                start_delay=service_settings.consumer_startup_delay,
            )
            consumer.start()

        try:
            call_command("runserver", options["addrport"], use_reloader=False)
        finally:
            self.stdout.write("Shutting down service...")
            if consumer is not None:
                consumer.stop(timeout=service_settings.consumer_timeout)

    def preload_cache(self, store, cache):
        try:
            orders = store.get_all()
        except OrderServiceError as e:
            logger.error(f"Failed to get orders for preloading cache: {e}")
            return 0
        try:
            count = cache.preload(orders)
        except OrderServiceError as e:
            logger.error(f"Failed to preload cache: {e}")
            return 0
        self.stdout.write(self.style.SUCCESS(f"Preloaded {count} orders into cache"))
        return count

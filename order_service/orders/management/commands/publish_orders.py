from django.conf import settings
from django.core.management.base import BaseCommand, CommandError
from django.utils import timezone
from kafka.errors import KafkaError
from orders.kafka_client.client import get_producer


def sample_order(number=None):
    suffix = "" if number is None else str(number)
    shift = number or 0
    order_uid = "test-order-123" if number is None else f"test-order-{number}"
    track_number = f"WBILMTESTTRACK{suffix}"
    return {
        "order_uid": order_uid,
        "track_number": track_number,
        "entry": "WBIL",
        "delivery": {
            "name": "Test Testov" if number is None else f"Test User {number}",
            "phone": "+9720000000",
            "zip": "2639809",
            "city": "Kiryat Mozkin",
            "address": "Ploshad Mira 15" if number is None else f"Test Address {number}",
            "region": "Kraiot",
            "email": "test@gmail.com" if number is None else f"test{number}@gmail.com",
        },
        "payment": {
            "transaction": f"b563feb7b2b84b6test{suffix}",
            "request_id": "",
            "currency": "USD",
            "provider": "wbpay",
            "amount": 1817 + shift,
            "payment_dt": 1637907727,
            "bank": "alpha",
            "delivery_cost": 1500,
            "goods_total": 317 + shift,
            "custom_fee": 0,
        },
        "items": [
            {
                "chrt_id": 9934930 + shift,
                "track_number": track_number,
                "price": 453 + shift,
                "rid": f"ab4219087a764ae0btest{suffix}",
                "name": "Mascaras" if number is None else f"Test Product {number}",
                "sale": 30,
                "size": "0",
                "total_price": 317 + shift,
                "nm_id": 2389212,
                "brand": "Vivienne Sabo",
                "status": 202,
            }
        ],
        "locale": "en",
        "internal_signature": "",
        "customer_id": "test",
        "delivery_service": "meest",
        "shardkey": "9",
        "sm_id": 99,
        "date_created": timezone.now().isoformat(),
        "oof_shard": "1",
    }


class Command(BaseCommand):
    help = "Publishes sample orders to the Kafka orders topic"

    def add_arguments(self, parser):
        parser.add_argument(
            "--count",
            type=int,
            default=0,
            help="Publish test-order-1..N instead of the single test-order-123",
        )
        parser.add_argument("--topic", default=settings.KAFKA_TOPIC)

    def handle(self, *args, **options):
        count = options["count"]
        if count < 0:
            raise CommandError("--count cannot be negative")

        producer = get_producer()
        if not producer:
            raise CommandError("Could not get Kafka producer.")

        orders = [sample_order(n) for n in range(1, count + 1)] if count else [sample_order()]
        try:
            futures = [
                producer.send(options["topic"], key=order["order_uid"], value=order)
                for order in orders
            ]
            producer.flush()
            for future in futures:
                future.get(timeout=10)
        except KafkaError as e:
            raise CommandError(f"Failed to send orders to Kafka: {e}") from e
        finally:
            producer.close()

        self.stdout.write(
            self.style.SUCCESS(f"Successfully sent {len(orders)} orders to '{options['topic']}'.")
        )

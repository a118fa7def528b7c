from dataclasses import dataclass

from django.conf import settings
from django.core.exceptions import ImproperlyConfigured


@dataclass(frozen=True)
class ServiceSettings:
    cache_ttl: int
    cache_writeback_workers: int
    kafka_brokers: tuple
    kafka_topic: str
    kafka_group_id: str
    consumer_timeout: float
    consumer_retry_delay: float
    consumer_poll_timeout: float
    consumer_startup_delay: float

    def validate(self):
        if self.cache_ttl <= 0:
            raise ImproperlyConfigured("CACHE_TTL must be positive")
        if self.cache_writeback_workers <= 0:
            raise ImproperlyConfigured("CACHE_WRITEBACK_WORKERS must be positive")
        if not self.kafka_brokers:
            raise ImproperlyConfigured("at least one KAFKA_BROKER is required")
        if not self.kafka_topic:
            raise ImproperlyConfigured("KAFKA_TOPIC is required")
        if not self.kafka_group_id:
            raise ImproperlyConfigured("KAFKA_GROUP_ID is required")
        if self.consumer_timeout <= 0:
            raise ImproperlyConfigured("CONSUMER_TIMEOUT must be positive")
        if self.consumer_retry_delay < 0:
            raise ImproperlyConfigured("CONSUMER_RETRY_DELAY cannot be negative")
        if self.consumer_poll_timeout <= 0:
            raise ImproperlyConfigured("CONSUMER_POLL_TIMEOUT must be positive")
        if self.consumer_startup_delay < 0:
            raise ImproperlyConfigured("CONSUMER_STARTUP_DELAY cannot be negative")
        return self


def get_service_settings():
    return ServiceSettings(
        cache_ttl=settings.ORDER_CACHE_TTL,
        cache_writeback_workers=settings.ORDER_CACHE_WRITEBACK_WORKERS,
        kafka_brokers=tuple(settings.KAFKA_BROKERS),
        kafka_topic=settings.KAFKA_TOPIC,
        kafka_group_id=settings.KAFKA_GROUP_ID,
        consumer_timeout=settings.CONSUMER_TIMEOUT,
        consumer_retry_delay=settings.CONSUMER_RETRY_DELAY,
        consumer_poll_timeout=settings.CONSUMER_POLL_TIMEOUT,
        consumer_startup_delay=settings.CONSUMER_STARTUP_DELAY,
    ).validate()

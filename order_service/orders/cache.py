import logging

from django.conf import settings
from django.core.cache import DEFAULT_CACHE_ALIAS, caches
from redis.exceptions import RedisError

from orders import ports
from orders.exceptions import SerializationError, TransportError
from orders.serializers import decode_order, encode_order

logger = logging.getLogger(__name__)

# Ошибки клиента Redis и сокета считаются недоступностью кэша
BACKEND_ERRORS = (RedisError, OSError)

PING_KEY = "order-service:ping"


def cache_key(order_uid):
    return f"order:{order_uid}"


class OrderCache(ports.OrderCache):
    def __init__(self, alias=DEFAULT_CACHE_ALIAS, ttl=None):
        self.alias = alias
        self.ttl = settings.ORDER_CACHE_TTL if ttl is None else ttl

    @property
    def backend(self):
        return caches[self.alias]

    def ping(self):
        try:
            self.backend.get(PING_KEY)
        except BACKEND_ERRORS as e:
            raise TransportError(f"Failed to connect to cache: {e}") from e

    def set(self, order):
        payload = encode_order(order)
        try:
            self.backend.set(cache_key(order.order_uid), payload, timeout=self.ttl)
        except BACKEND_ERRORS as e:
            raise TransportError(f"Failed to set order in cache: {e}") from e

    def get(self, order_uid):
        try:
            payload = self.backend.get(cache_key(order_uid))
        except BACKEND_ERRORS as e:
            raise TransportError(f"Failed to get order from cache: {e}") from e
        if payload is None:
            return None
        try:
            return decode_order(payload)
        except SerializationError:
            logger.warning(f"Cached order {order_uid} is corrupted")
            raise

    def preload(self, orders):
        count = 0
        for order in orders:
            self.set(order)
            count += 1
        return count

    def delete(self, order_uid):
        try:
            self.backend.delete(cache_key(order_uid))
        except BACKEND_ERRORS as e:
            logger.warning(f"Failed to invalidate order {order_uid} in cache: {e}")

import functools
import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field

from django.conf import settings

from orders.cache import OrderCache
from orders.exceptions import (
    BulkOperationError,
    OrderServiceError,
    UnknownOperationError,
)
from orders.repository import OrderStore

logger = logging.getLogger(__name__)

SOURCE_CACHE = "cache"
SOURCE_DATABASE = "database"

OPERATION_GET = "get"
OPERATION_DELETE = "delete"


@dataclass
class OrderLookup:
    order: object
    source: str
    fetch_seconds: float


@dataclass
class BulkResult:
    fetched: list = field(default_factory=list)
    deleted: list = field(default_factory=list)


class QueryGateway:
    """Read path in front of the store and the cache, plus bulk operations.

    A point read tries the cache first and falls back to the store. A cache
    failure counts as a miss. Orders found in the store are written back to
    the cache on ``writeback_executor`` without waiting; a failed write-back
    is only logged.

    A bulk delete that commits while a write-back for the same order is
    still pending marks that order stale: the write-back is skipped, or its
    entry is removed again if it already landed. This only covers reads and
    deletes made through the same gateway; across processes a write-back
    can still restore a deleted order until its TTL expires.
    """

    def __init__(self, store, cache, writeback_executor=None):
        self.store = store
        self.cache = cache
        self.writeback_executor = writeback_executor or _default_writeback_executor()
        self._lock = threading.Lock()
        # order_uid -> число чтений из БД, чей write-back ещё не завершён
        self._pending = {}
        self._stale = set()

    def get_order(self, order_uid):
        started = time.perf_counter()
        try:
            order = self.cache.get(order_uid)
        except OrderServiceError as e:
            logger.warning(f"Error accessing cache for order {order_uid}: {e}")
            order = None
        if order is not None:
            return OrderLookup(order, SOURCE_CACHE, time.perf_counter() - started)

        logger.info(f"Order {order_uid} not found in cache, checking database")
        self._track(order_uid)
        started = time.perf_counter()
        try:
            order = self.store.get(order_uid)
        except BaseException:
            self._release(order_uid)
            raise
        fetch_seconds = time.perf_counter() - started

        self._write_back(order)
        return OrderLookup(order, SOURCE_DATABASE, fetch_seconds)

    def _track(self, order_uid):
        with self._lock:
            self._pending[order_uid] = self._pending.get(order_uid, 0) + 1

    def _release(self, order_uid):
        with self._lock:
            left = self._pending.get(order_uid, 0) - 1
            if left > 0:
                self._pending[order_uid] = left
            else:
                self._pending.pop(order_uid, None)
                self._stale.discard(order_uid)

    def _is_stale(self, order_uid):
        with self._lock:
            return order_uid in self._stale

    def _write_back(self, order):
        try:
            future = self.writeback_executor.submit(self._set_in_cache, order)
        except RuntimeError:
            self._release(order.order_uid)
            raise
        future.add_done_callback(functools.partial(_log_write_back, order.order_uid))
        return future

    def _set_in_cache(self, order):
        order_uid = order.order_uid
        try:
            if self._is_stale(order_uid):
                logger.info(f"Order {order_uid} was deleted, skipping cache write-back")
                return
            self.cache.set(order)
            if self._is_stale(order_uid):
                self.cache.delete(order_uid)
        finally:
            self._release(order_uid)

    def bulk(self, operations, order_ids):
        pairs = list(zip(operations, order_ids))
        result = BulkResult()

        def apply(tx):
            for index, (operation, order_uid) in enumerate(pairs):
                try:
                    if operation == OPERATION_GET:
                        order = tx.get(order_uid)
                        result.fetched.append(order)
                        logger.info(
                            f"Order {order_uid} retrieved in transaction: {order.track_number}"
                        )
                    elif operation == OPERATION_DELETE:
                        tx.delete(order_uid)
                        result.deleted.append(order_uid)
                        logger.info(f"Order {order_uid} deleted in transaction")
                    else:
                        raise UnknownOperationError(f"Unknown operation: {operation}")
                except OrderServiceError as e:
                    raise BulkOperationError(operation, index, order_uid, e) from e

        self.store.with_transaction(apply)

        with self._lock:
            self._stale.update(uid for uid in result.deleted if uid in self._pending)
        for order_uid in result.deleted:
            self.cache.delete(order_uid)
        return result


def _log_write_back(order_uid, future):
    if future.cancelled():
        return
    error = future.exception()
    if error is not None:
        logger.error(f"Failed to set order {order_uid} in cache: {error}")


@functools.lru_cache(maxsize=None)
def _default_writeback_executor():
    return ThreadPoolExecutor(
        max_workers=settings.ORDER_CACHE_WRITEBACK_WORKERS,
        thread_name_prefix="cache-writeback",
    )


@functools.lru_cache(maxsize=None)
def get_gateway():
    return QueryGateway(OrderStore(), OrderCache())

import json
import logging

from django.db import DEFAULT_DB_ALIAS, DatabaseError, connections, transaction

from orders import ports
from orders.exceptions import (
    OrderNotFound,
    OrderValidationError,
    SerializationError,
    TransactionError,
    TransportError,
)
from orders.models import Order

logger = logging.getLogger(__name__)

EMBEDDED_DOCUMENTS = ("delivery", "payment", "items")


# Запросы ниже принимают executor: QuerySet, привязанный к алиасу БД.
# Внутри открытой транзакции тот же executor работает в её рамках.


def _check_documents(order):
    for name in EMBEDDED_DOCUMENTS:
        try:
            json.dumps(getattr(order, name))
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Failed to marshal {name}: {e}") from e


def _upsert_order(executor, order):
    if not order.order_uid:
        raise OrderValidationError("Order UID is required")
    _check_documents(order)
    try:
        executor.bulk_create(
            [order],
            update_conflicts=True,
            unique_fields=["order_uid"],
            update_fields=Order.REPLACEABLE_FIELDS,
        )
    except DatabaseError as e:
        raise TransportError(f"Failed to save order {order.order_uid}: {e}") from e
    logger.info(f"Order {order.order_uid} saved successfully")


def _get_order(executor, order_uid):
    try:
        return executor.get(pk=order_uid)
    except Order.DoesNotExist:
        raise OrderNotFound(order_uid) from None
    except ValueError as e:
        raise SerializationError(f"Failed to unmarshal order {order_uid}: {e}") from e
    except DatabaseError as e:
        raise TransportError(f"Failed to get order {order_uid}: {e}") from e


def _get_all_orders(executor):
    try:
        return list(executor.order_by("-date_created"))
    except ValueError as e:
        raise SerializationError(f"Failed to unmarshal orders: {e}") from e
    except DatabaseError as e:
        raise TransportError(f"Failed to query orders: {e}") from e


def _delete_order(executor, order_uid):
    try:
        deleted, _ = executor.filter(pk=order_uid).delete()
    except DatabaseError as e:
        raise TransportError(f"Failed to delete order {order_uid}: {e}") from e
    if not deleted:
        raise OrderNotFound(order_uid)
    logger.info(f"Order {order_uid} deleted successfully")


class OrderTransaction(ports.OrderTransaction):
    """One read-committed, read-write transaction on a database alias.

    Usable as a context manager (commit on clean exit, rollback on error) or
    driven explicitly with ``begin``/``commit``/``rollback``. Must be
    finished on the thread that began it.
    """

    def __init__(self, using=DEFAULT_DB_ALIAS, timeout=None):
        self.using = using
        self.timeout = timeout
        self._atomic = None
        self._active = False

    @property
    def active(self):
        return self._active

    def begin(self):
        if self._atomic is not None:
            raise TransactionError("Transaction already started")
        self._atomic = transaction.atomic(using=self.using)
        try:
            self._atomic.__enter__()
        except DatabaseError as e:
            raise TransactionError(f"Failed to begin transaction: {e}") from e
        self._active = True
        if self.timeout:
            try:
                self._set_statement_timeout(self.timeout)
            except DatabaseError as e:
                self.rollback()
                raise TransactionError(f"Failed to begin transaction: {e}") from e
        return self

    def _set_statement_timeout(self, timeout):
        connection = connections[self.using]
        if connection.vendor != "postgresql":
            return
        with connection.cursor() as cursor:
            cursor.execute(
                "SELECT set_config('statement_timeout', %s, true)",
                [str(max(int(timeout * 1000), 1))],
            )

    def _executor(self):
        if not self._active:
            raise TransactionError("Transaction is not active")
        return Order.objects.using(self.using)

    def get(self, order_uid):
        return _get_order(self._executor(), order_uid)

    def get_all(self):
        return _get_all_orders(self._executor())

    def upsert(self, order):
        _upsert_order(self._executor(), order)

    def delete(self, order_uid):
        _delete_order(self._executor(), order_uid)

    def commit(self):
        if not self._active:
            raise TransactionError("Transaction is not active")
        self._active = False
        try:
            self._atomic.__exit__(None, None, None)
        except DatabaseError as e:
            raise TransactionError(f"Failed to commit transaction: {e}") from e
        logger.info("Transaction committed successfully")

    def rollback(self):
        if not self._active:
            return
        self._active = False
        try:
            transaction.set_rollback(True, using=self.using)
            self._atomic.__exit__(None, None, None)
        except DatabaseError as e:
            raise TransactionError(f"Failed to rollback transaction: {e}") from e
        logger.warning("Transaction rolled back")

    def __enter__(self):
        if self._atomic is None:
            self.begin()
        return self

    def __exit__(self, exc_type, exc_value, traceback):
        if exc_type is None:
            if self._active:
                self.commit()
        else:
            self.rollback()
        return False


class OrderStore(ports.OrderRepository):
    def __init__(self, using=DEFAULT_DB_ALIAS):
        self.using = using

    def _executor(self):
        return Order.objects.using(self.using)

    def ping(self):
        try:
            connections[self.using].ensure_connection()
        except DatabaseError as e:
            raise TransportError(f"Failed to connect to database: {e}") from e

    def get(self, order_uid):
        return _get_order(self._executor(), order_uid)

    def get_all(self):
        return _get_all_orders(self._executor())

    def upsert(self, order):
        _upsert_order(self._executor(), order)

    def delete(self, order_uid):
        _delete_order(self._executor(), order_uid)

    def begin(self, timeout=None):
        return OrderTransaction(using=self.using, timeout=timeout).begin()

    def with_transaction(self, fn, timeout=None):
        tx = self.begin(timeout=timeout)
        try:
            result = fn(tx)
        except BaseException as e:
            try:
                tx.rollback()
            except TransactionError as rollback_error:
                logger.error(f"Rollback failed after {e!r}: {rollback_error}")
            raise
        tx.commit()
        return result

import json
from concurrent.futures import ThreadPoolExecutor
from io import StringIO
from unittest.mock import MagicMock, patch

from django.core.cache import caches
from django.core.exceptions import ImproperlyConfigured
from django.core.management import call_command
from django.core.management.base import CommandError
from django.db import OperationalError, connection
from django.db.models.query import QuerySet
from django.test import TestCase, TransactionTestCase, override_settings
from django.urls import reverse
from kafka.errors import KafkaError, NoBrokersAvailable
from redis.exceptions import ConnectionError as RedisConnectionError
from rest_framework import status

from orders.cache import OrderCache, cache_key
from orders.conf import get_service_settings
from orders.consumer import ConsumerState, QueueConsumer
from orders.exceptions import (
    BulkOperationError,
    OrderNotFound,
    OrderValidationError,
    SerializationError,
    TransactionError,
    TransportError,
    UnknownOperationError,
)
from orders.gateway import SOURCE_CACHE, SOURCE_DATABASE, QueryGateway
from orders.models import Order
from orders.repository import OrderStore, OrderTransaction
from orders.serializers import decode_order, order_from_data, order_to_data


def make_order_payload(order_uid="test-order-123", **overrides):
    payload = {
        "order_uid": order_uid,
        "track_number": "WBILMTESTTRACK",
        "entry": "WBIL",
        "delivery": {
            "name": "Test Testov",
            "phone": "+9720000000",
            "zip": "2639809",
            "city": "Kiryat Mozkin",
            "address": "Ploshad Mira 15",
            "region": "Kraiot",
            "email": "test@gmail.com",
        },
        "payment": {
            "transaction": "b563feb7b2b84b6test",
            "request_id": "",
            "currency": "USD",
            "provider": "wbpay",
            "amount": 1817,
            "payment_dt": 1637907727,
            "bank": "alpha",
            "delivery_cost": 1500,
            "goods_total": 317,
            "custom_fee": 0,
        },
        "items": [
            {
                "chrt_id": 9934930,
                "track_number": "WBILMTESTTRACK",
                "price": 453,
                "rid": "ab4219087a764ae0btest",
                "name": "Mascaras",
                "sale": 30,
                "size": "0",
                "total_price": 317,
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
        "date_created": "2021-11-26T06:22:19Z",
        "oof_shard": "1",
    }
    payload.update(overrides)
    return payload


def make_order(order_uid="test-order-123", **overrides):
    return order_from_data(make_order_payload(order_uid, **overrides))


def as_plain(data):
    return json.loads(json.dumps(data))


def create_mock_kafka_message(payload, offset=0):
    message = MagicMock()
    message.topic = "orders"
    message.partition = 0
    message.offset = offset
    message.value = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
    return message


class FakeKafkaConsumer:
    """Отдаёт заранее заданные записи (или ошибки) по одной за poll."""

    def __init__(self, items, on_exhausted=None):
        self.items = list(items)
        self.on_exhausted = on_exhausted
        self.commit = MagicMock()
        self.close = MagicMock()

    def poll(self, timeout_ms=None, max_records=None):
        if not self.items:
            if self.on_exhausted:
                self.on_exhausted()
            return {}
        item = self.items.pop(0)
        if isinstance(item, Exception):
            raise item
        return {(item.topic, item.partition): [item]}


class FlakyStore(OrderStore):
    """Первые ``failures`` транзакций падают с TransportError."""

    def __init__(self, failures=1):
        super().__init__()
        self.failures = failures

    def with_transaction(self, fn, timeout=None):
        if self.failures:
            self.failures -= 1
            raise TransportError("connection refused")
        return super().with_transaction(fn, timeout=timeout)


class OrderSerializerTests(TestCase):
    """Тесты для формата заказа в сообщениях, кэше и API."""

    def test_decode_round_trips_full_payload(self):
        payload = make_order_payload()
        order = decode_order(json.dumps(payload).encode("utf-8"))

        self.assertEqual(order.order_uid, "test-order-123")
        self.assertEqual(order.items[0]["chrt_id"], 9934930)
        self.assertEqual(as_plain(order_to_data(order)), payload)

    def test_missing_fields_take_zero_values(self):
        order = decode_order(b'{"order_uid": "bare"}')

        data = as_plain(order_to_data(order))
        self.assertEqual(data["track_number"], "")
        self.assertEqual(data["sm_id"], 0)
        self.assertIsNone(data["date_created"])
        self.assertEqual(data["items"], [])
        self.assertEqual(data["payment"]["amount"], 0)

    def test_malformed_json_is_serialization_error(self):
        with self.assertRaises(SerializationError):
            decode_order(b"{not json")

    def test_wrong_types_are_serialization_error(self):
        with self.assertRaises(SerializationError):
            decode_order(json.dumps(make_order_payload(sm_id="many")))
        with self.assertRaises(SerializationError):
            decode_order(json.dumps(make_order_payload(delivery="nowhere")))
        with self.assertRaises(SerializationError):
            decode_order(b"[1, 2, 3]")

    def test_json_types_are_not_coerced(self):
        """Тест: строка вместо числа и число вместо строки не приводятся, а отклоняются."""
        payloads = [
            {"order_uid": "x", "sm_id": "5"},
            {"order_uid": 123},
            {"order_uid": "x", "payment": {"amount": "1817"}},
            {"order_uid": "x", "sm_id": 5.5},
            {"order_uid": "x", "sm_id": True},
            {"order_uid": "x", "items": [{"chrt_id": "9934930"}]},
            {"order_uid": "x", "delivery": {"zip": 2639809}},
        ]
        for payload in payloads:
            with self.subTest(payload=payload):
                with self.assertRaises(SerializationError):
                    decode_order(json.dumps(payload))

    def test_empty_order_uid_is_decoded_for_later_validation(self):
        order = decode_order(json.dumps(make_order_payload(order_uid="")))
        self.assertEqual(order.order_uid, "")


class OrderStoreTests(TestCase):
    """Тесты для транзакционного репозитория заказов."""

    def setUp(self):
        self.store = OrderStore()

    def test_upsert_then_get_returns_equal_order(self):
        order = make_order()
        self.store.upsert(order)

        stored = self.store.get("test-order-123")
        self.assertEqual(as_plain(order_to_data(stored)), make_order_payload())

    def test_upsert_replaces_whole_order(self):
        """Тест: повторный upsert полностью заменяет заказ, без слияния полей."""
        self.store.upsert(make_order())
        replacement = make_order(
            track_number="NEWTRACK",
            delivery={"name": "Other Person", "city": "Haifa"},
            items=[],
        )
        self.store.upsert(replacement)

        stored = self.store.get("test-order-123")
        data = as_plain(order_to_data(stored))
        self.assertEqual(data, as_plain(order_to_data(replacement)))
        # Старые поля доставки не должны «просочиться»
        self.assertEqual(stored.delivery["address"], "")
        self.assertEqual(stored.delivery["name"], "Other Person")
        self.assertEqual(stored.items, [])
        self.assertEqual(Order.objects.count(), 1)

    def test_upsert_is_idempotent(self):
        order = make_order()
        self.store.upsert(order)
        self.store.upsert(order)

        self.assertEqual(Order.objects.count(), 1)

    def test_upsert_rejects_empty_order_uid(self):
        with self.assertRaises(OrderValidationError):
            self.store.upsert(make_order(order_uid=""))
        self.assertEqual(Order.objects.count(), 0)

    def test_upsert_rejects_unserializable_document(self):
        order = make_order()
        order.payment = {"amount": object()}

        with self.assertRaises(SerializationError):
            self.store.upsert(order)
        self.assertEqual(Order.objects.count(), 0)

    def test_get_missing_order_raises_not_found(self):
        with self.assertRaises(OrderNotFound) as ctx:
            self.store.get("missing")
        self.assertEqual(ctx.exception.order_uid, "missing")

    def test_delete(self):
        self.store.upsert(make_order())
        self.store.delete("test-order-123")

        self.assertFalse(Order.objects.filter(pk="test-order-123").exists())
        with self.assertRaises(OrderNotFound):
            self.store.delete("test-order-123")

    def test_get_all_orders_newest_first(self):
        self.store.upsert(make_order("old", date_created="2021-01-01T00:00:00Z"))
        self.store.upsert(make_order("new", date_created="2023-01-01T00:00:00Z"))
        self.store.upsert(make_order("mid", date_created="2022-01-01T00:00:00Z"))

        uids = [order.order_uid for order in self.store.get_all()]
        self.assertEqual(uids, ["new", "mid", "old"])

    def test_database_error_is_transport_error(self):
        with patch.object(QuerySet, "get", side_effect=OperationalError("server closed the connection")):
            with self.assertRaises(TransportError):
                self.store.get("test-order-123")

    def test_with_transaction_commits(self):
        result = self.store.with_transaction(lambda tx: tx.upsert(make_order()) or "done")

        self.assertEqual(result, "done")
        self.assertTrue(Order.objects.filter(pk="test-order-123").exists())

    def test_with_transaction_rolls_back_and_propagates(self):
        def fail(tx):
            tx.upsert(make_order())
            tx.get("missing")

        with self.assertRaises(OrderNotFound):
            self.store.with_transaction(fail)
        self.assertEqual(Order.objects.count(), 0)

    def test_with_transaction_rolls_back_on_interruption(self):
        def interrupted(tx):
            tx.upsert(make_order())
            raise KeyboardInterrupt

        with self.assertRaises(KeyboardInterrupt):
            self.store.with_transaction(interrupted)
        self.assertEqual(Order.objects.count(), 0)

    def test_explicit_transaction(self):
        tx = self.store.begin()
        tx.upsert(make_order())
        self.assertEqual(tx.get("test-order-123").track_number, "WBILMTESTTRACK")
        tx.commit()

        self.assertTrue(Order.objects.filter(pk="test-order-123").exists())
        # Завершённая транзакция больше не принимает запросы
        with self.assertRaises(TransactionError):
            tx.get("test-order-123")
        with self.assertRaises(TransactionError):
            tx.commit()
        tx.rollback()

    def test_transaction_context_manager_rolls_back_on_error(self):
        with self.assertRaises(RuntimeError):
            with OrderTransaction() as tx:
                tx.upsert(make_order())
                raise RuntimeError("boom")
        self.assertEqual(Order.objects.count(), 0)

    def test_transaction_timeout_is_applied(self):
        with patch.object(OrderTransaction, "_set_statement_timeout") as mock_timeout:
            self.store.with_transaction(lambda tx: tx.upsert(make_order()), timeout=2.5)
        mock_timeout.assert_called_once_with(2.5)

    def test_ping(self):
        self.store.ping()


class OrderCacheTests(TestCase):
    """Тесты для кэша заказов (cache-aside)."""

    def setUp(self):
        caches["default"].clear()
        self.cache = OrderCache(ttl=30)

    def test_set_then_get(self):
        self.cache.set(make_order())

        cached = self.cache.get("test-order-123")
        self.assertEqual(as_plain(order_to_data(cached)), make_order_payload())

    def test_miss_returns_none(self):
        self.assertIsNone(self.cache.get("missing"))

    def test_set_uses_configured_ttl(self):
        with patch.object(caches["default"], "set") as mock_set:
            self.cache.set(make_order())
        args, kwargs = mock_set.call_args
        self.assertEqual(args[0], cache_key("test-order-123"))
        self.assertEqual(kwargs["timeout"], 30)

    def test_set_overwrites(self):
        self.cache.set(make_order())
        self.cache.set(make_order(track_number="UPDATED"))

        self.assertEqual(self.cache.get("test-order-123").track_number, "UPDATED")

    def test_backend_failure_is_transport_error_not_miss(self):
        with patch.object(caches["default"], "get", side_effect=RedisConnectionError("refused")):
            with self.assertRaises(TransportError):
                self.cache.get("test-order-123")

    def test_corrupted_entry_is_serialization_error(self):
        caches["default"].set(cache_key("broken"), "{oops", 30)
        with self.assertRaises(SerializationError):
            self.cache.get("broken")

    def test_preload(self):
        count = self.cache.preload([make_order("a"), make_order("b")])

        self.assertEqual(count, 2)
        self.assertIsNotNone(self.cache.get("a"))
        self.assertIsNotNone(self.cache.get("b"))

    def test_preload_stops_at_first_error(self):
        with patch.object(
            caches["default"], "set", side_effect=[None, RedisConnectionError("refused"), None]
        ) as mock_set:
            with self.assertRaises(TransportError):
                self.cache.preload([make_order("a"), make_order("b"), make_order("c")])
        self.assertEqual(mock_set.call_count, 2)

    def test_delete_is_tolerant(self):
        self.cache.set(make_order())
        self.cache.delete("test-order-123")
        self.cache.delete("test-order-123")
        self.assertIsNone(self.cache.get("test-order-123"))

        with patch.object(caches["default"], "delete", side_effect=RedisConnectionError("refused")):
            self.cache.delete("test-order-123")

    def test_ping_failure(self):
        with patch.object(caches["default"], "get", side_effect=RedisConnectionError("refused")):
            with self.assertRaises(TransportError):
                self.cache.ping()


class QueueConsumerTests(TestCase):
    """Тесты для Kafka-консьюмера заказов."""

    def _make_consumer(self, items, store=None, **kwargs):
        holder = {}
        source = FakeKafkaConsumer(items, on_exhausted=lambda: holder["consumer"].stop())
        options = {"retry_delay": 0, "manage_connections": False}
        options.update(kwargs)
        consumer = QueueConsumer(lambda: source, store or OrderStore(), **options)
        holder["consumer"] = consumer
        return consumer, source

    def test_process_message_persists_order(self):
        consumer, _ = self._make_consumer([])
        order = consumer.process_message(json.dumps(make_order_payload()).encode("utf-8"))

        self.assertEqual(order.order_uid, "test-order-123")
        stored = OrderStore().get("test-order-123")
        self.assertEqual(as_plain(order_to_data(stored)), make_order_payload())

    def test_empty_order_uid_is_rejected(self):
        consumer, _ = self._make_consumer([])

        with self.assertRaises(OrderValidationError):
            consumer.process_message(json.dumps(make_order_payload(order_uid="")).encode("utf-8"))
        self.assertEqual(Order.objects.count(), 0)
        with self.assertRaises(OrderNotFound):
            OrderStore().get("")

    def test_malformed_message_is_rejected(self):
        consumer, _ = self._make_consumer([])

        with self.assertRaises(SerializationError):
            consumer.process_message(b"\xff\xfe garbage")

    def test_message_exceeding_timeout_is_not_persisted(self):
        clock = MagicMock(side_effect=[0.0, 11.0])
        consumer, _ = self._make_consumer([], timeout=10.0, clock=clock)

        with self.assertRaises(TimeoutError):
            consumer.process_message(json.dumps(make_order_payload()).encode("utf-8"))
        self.assertEqual(Order.objects.count(), 0)

    def test_loop_continues_after_persistence_failure(self):
        """Тест: ошибка сохранения сообщения M не останавливает цикл, M+1 сохраняется."""
        failing = create_mock_kafka_message(make_order_payload("order-m"), offset=0)
        following = create_mock_kafka_message(make_order_payload("order-m1"), offset=1)
        consumer, source = self._make_consumer([failing, following], store=FlakyStore(failures=1))

        consumer.run()

        self.assertFalse(Order.objects.filter(pk="order-m").exists())
        self.assertTrue(Order.objects.filter(pk="order-m1").exists())
        # Оффсет фиксируется после обработки каждого сообщения
        self.assertEqual(source.commit.call_count, 2)
        self.assertEqual(consumer.state, ConsumerState.STOPPED)
        source.close.assert_called_once()

    def test_loop_skips_invalid_messages(self):
        messages = [
            create_mock_kafka_message(b"not json", offset=0),
            create_mock_kafka_message(make_order_payload(order_uid=""), offset=1),
            create_mock_kafka_message(make_order_payload("valid"), offset=2),
        ]
        consumer, source = self._make_consumer(messages)

        consumer.run()

        self.assertEqual(list(Order.objects.values_list("order_uid", flat=True)), ["valid"])
        self.assertEqual(source.commit.call_count, 3)

    def test_fetch_errors_are_retried(self):
        message = create_mock_kafka_message(make_order_payload(), offset=0)
        consumer, _ = self._make_consumer([KafkaError("broker unreachable"), OSError("timeout"), message])

        consumer.run()

        self.assertTrue(Order.objects.filter(pk="test-order-123").exists())

    def test_unavailable_broker_is_retried(self):
        message = create_mock_kafka_message(make_order_payload(), offset=0)
        holder = {}
        source = FakeKafkaConsumer([message], on_exhausted=lambda: holder["consumer"].stop())
        connect = MagicMock(side_effect=[None, NoBrokersAvailable(), source])
        consumer = QueueConsumer(connect, OrderStore(), retry_delay=0, manage_connections=False)
        holder["consumer"] = consumer

        consumer.run()

        self.assertEqual(connect.call_count, 3)
        self.assertTrue(Order.objects.filter(pk="test-order-123").exists())

    def test_commit_failure_does_not_stop_loop(self):
        messages = [
            create_mock_kafka_message(make_order_payload("a"), offset=0),
            create_mock_kafka_message(make_order_payload("b"), offset=1),
        ]
        consumer, source = self._make_consumer(messages)
        source.commit.side_effect = [KafkaError("rebalance"), None]

        consumer.run()

        self.assertEqual(Order.objects.count(), 2)

    def test_background_lifecycle(self):
        store = MagicMock()
        source = FakeKafkaConsumer([])
        consumer = QueueConsumer(
            lambda: source, store, poll_timeout=0.01, manage_connections=False
        )
        self.assertEqual(consumer.state, ConsumerState.IDLE)

        consumer.start()
        with self.assertRaises(RuntimeError):
            consumer.start()
        consumer.stop(timeout=5)

        self.assertEqual(consumer.state, ConsumerState.STOPPED)
        source.close.assert_called_once()
        store.with_transaction.assert_not_called()

    def test_stop_before_start(self):
        consumer = QueueConsumer(MagicMock(), MagicMock())
        consumer.stop()

        self.assertEqual(consumer.state, ConsumerState.STOPPED)
        with self.assertRaises(RuntimeError):
            consumer.run()


class QueryGatewayTests(TestCase):
    """Тесты для чтения заказов (кэш → БД) и пакетных операций."""

    def setUp(self):
        caches["default"].clear()
        self.store = OrderStore()
        self.cache = OrderCache()
        self.executor = ThreadPoolExecutor(max_workers=1)
        self.gateway = QueryGateway(self.store, self.cache, writeback_executor=self.executor)

    def tearDown(self):
        self.executor.shutdown(wait=True)

    def test_cold_read_then_cache_hit(self):
        self.store.upsert(make_order())

        first = self.gateway.get_order("test-order-123")
        self.executor.shutdown(wait=True)
        second = self.gateway.get_order("test-order-123")

        self.assertEqual(first.source, SOURCE_DATABASE)
        self.assertEqual(second.source, SOURCE_CACHE)
        self.assertEqual(order_to_data(first.order), order_to_data(second.order))

    def test_cache_failure_falls_through_to_store(self):
        self.store.upsert(make_order())

        with patch.object(self.cache, "get", side_effect=TransportError("refused")):
            lookup = self.gateway.get_order("test-order-123")

        self.assertEqual(lookup.source, SOURCE_DATABASE)
        self.assertEqual(lookup.order.track_number, "WBILMTESTTRACK")

    def test_store_miss_is_not_found(self):
        with self.assertRaises(OrderNotFound):
            self.gateway.get_order("missing")

    def test_write_back_failure_is_only_logged(self):
        self.store.upsert(make_order())

        with patch.object(self.cache, "set", side_effect=TransportError("refused")):
            with self.assertLogs("orders.gateway", level="ERROR") as logs:
                lookup = self.gateway.get_order("test-order-123")
                self.executor.shutdown(wait=True)

        self.assertEqual(lookup.source, SOURCE_DATABASE)
        self.assertIn("Failed to set order test-order-123 in cache", logs.output[0])

    def test_bulk_get_and_delete(self):
        self.store.upsert(make_order("a"))
        self.store.upsert(make_order("b"))
        self.cache.set(make_order("b"))

        result = self.gateway.bulk(["get", "delete"], ["a", "b"])

        self.assertEqual([order.order_uid for order in result.fetched], ["a"])
        self.assertEqual(result.deleted, ["b"])
        self.assertFalse(Order.objects.filter(pk="b").exists())
        # Удалённый заказ вычищен из кэша
        self.assertIsNone(self.cache.get("b"))

    def test_bulk_is_all_or_nothing(self):
        """Тест: [get(A), delete(B), get(C)] с несуществующим B откатывается целиком."""
        self.store.upsert(make_order("A"))
        self.store.upsert(make_order("C"))

        with self.assertRaises(BulkOperationError) as ctx:
            self.gateway.bulk(["get", "delete", "get"], ["A", "B", "C"])

        self.assertEqual(ctx.exception.index, 1)
        self.assertEqual(ctx.exception.operation, "delete")
        self.assertIsInstance(ctx.exception.__cause__, OrderNotFound)
        self.assertEqual(self.store.get("A").track_number, "WBILMTESTTRACK")

    def test_bulk_rolls_back_earlier_deletes(self):
        self.store.upsert(make_order("A"))

        with self.assertRaises(BulkOperationError):
            self.gateway.bulk(["delete", "delete"], ["A", "B"])

        self.assertTrue(Order.objects.filter(pk="A").exists())

    def test_bulk_unknown_operation_aborts(self):
        self.store.upsert(make_order("A"))

        with self.assertRaises(BulkOperationError) as ctx:
            self.gateway.bulk(["delete", "update"], ["A", "A"])

        self.assertIsInstance(ctx.exception.__cause__, UnknownOperationError)
        self.assertTrue(Order.objects.filter(pk="A").exists())

    def test_bulk_ignores_unmatched_tail(self):
        self.store.upsert(make_order("A"))

        result = self.gateway.bulk(["get", "delete", "delete"], ["A"])

        self.assertEqual(len(result.fetched), 1)
        self.assertEqual(result.deleted, [])
        self.assertTrue(Order.objects.filter(pk="A").exists())

    def _deferred_gateway(self):
        # submit только запоминает задачу, запускаем её вручную
        executor = MagicMock()
        return QueryGateway(self.store, self.cache, writeback_executor=executor), executor

    def test_write_back_skipped_after_bulk_delete(self):
        """Тест: отложенный write-back не возвращает в кэш заказ, удалённый bulk-операцией."""
        self.store.upsert(make_order("A"))
        gateway, executor = self._deferred_gateway()

        lookup = gateway.get_order("A")
        task, order = executor.submit.call_args.args
        gateway.bulk(["delete"], ["A"])
        task(order)

        self.assertEqual(lookup.source, SOURCE_DATABASE)
        self.assertIsNone(self.cache.get("A"))
        with self.assertRaises(OrderNotFound):
            gateway.get_order("A")
        self.assertEqual(gateway._pending, {})
        self.assertEqual(gateway._stale, set())

    def test_write_back_kept_when_other_order_deleted(self):
        self.store.upsert(make_order("A"))
        self.store.upsert(make_order("B"))
        gateway, executor = self._deferred_gateway()

        gateway.get_order("A")
        task, order = executor.submit.call_args.args
        gateway.bulk(["delete"], ["B"])
        task(order)

        self.assertEqual(self.cache.get("A").order_uid, "A")
        self.assertEqual(gateway._pending, {})

    def test_store_miss_releases_tracking(self):
        gateway, executor = self._deferred_gateway()

        with self.assertRaises(OrderNotFound):
            gateway.get_order("missing")

        executor.submit.assert_not_called()
        self.assertEqual(gateway._pending, {})


class TopLevelTransactionTests(TransactionTestCase):
    """Тесты транзакций вне обёртки TestCase: настоящие COMMIT и ROLLBACK."""

    def setUp(self):
        caches["default"].clear()
        self.store = OrderStore()
        self.cache = OrderCache()
        self.executor = ThreadPoolExecutor(max_workers=1)
        self.gateway = QueryGateway(self.store, self.cache, writeback_executor=self.executor)

    def tearDown(self):
        self.executor.shutdown(wait=True)

    def test_commit(self):
        self.assertFalse(connection.in_atomic_block)

        def write(tx):
            self.assertTrue(connection.in_atomic_block)
            tx.upsert(make_order())

        self.store.with_transaction(write)

        self.assertFalse(connection.in_atomic_block)
        self.assertTrue(Order.objects.filter(pk="test-order-123").exists())

    def test_rollback(self):
        def fail(tx):
            tx.upsert(make_order())
            raise RuntimeError("boom")

        with self.assertRaises(RuntimeError):
            self.store.with_transaction(fail)

        self.assertFalse(connection.in_atomic_block)
        self.assertEqual(Order.objects.count(), 0)

    def test_explicit_begin_and_rollback(self):
        tx = self.store.begin()
        tx.upsert(make_order())
        tx.rollback()

        self.assertFalse(connection.in_atomic_block)
        self.assertEqual(Order.objects.count(), 0)

        tx = self.store.begin()
        tx.upsert(make_order())
        tx.commit()
        self.assertEqual(Order.objects.count(), 1)

    def test_bulk_is_all_or_nothing(self):
        self.store.upsert(make_order("A"))
        self.store.upsert(make_order("C"))

        with self.assertRaises(BulkOperationError):
            self.gateway.bulk(["delete", "delete", "get"], ["A", "B", "C"])

        self.assertFalse(connection.in_atomic_block)
        self.assertEqual(self.store.get("A").track_number, "WBILMTESTTRACK")
        self.assertEqual(Order.objects.count(), 2)

    def test_bulk_commit(self):
        self.store.upsert(make_order("A"))
        self.store.upsert(make_order("B"))

        result = self.gateway.bulk(["get", "delete"], ["A", "B"])

        self.assertEqual(result.deleted, ["B"])
        self.assertEqual(list(Order.objects.values_list("order_uid", flat=True)), ["A"])


class OrderAPITests(TestCase):
    """Тесты для REST API сервиса заказов."""

    def setUp(self):
        caches["default"].clear()
        self.store = OrderStore()
        self.executor = ThreadPoolExecutor(max_workers=1)
        self.gateway = QueryGateway(self.store, OrderCache(), writeback_executor=self.executor)
        patcher = patch("orders.views.get_gateway", return_value=self.gateway)
        patcher.start()
        self.addCleanup(patcher.stop)
        self.addCleanup(self.executor.shutdown, wait=True)

    def test_get_order_cold_then_cached(self):
        """
        Тест: сценарий test-order-123.
        1. Первый запрос после холодного старта идёт в БД (source=database).
        2. Повторный запрос в пределах TTL отдаётся из кэша (source=cache).
        3. Тело заказа в обоих ответах совпадает.
        """
        consumer = QueueConsumer(MagicMock(), self.store, manage_connections=False)
        consumer.process_message(json.dumps(make_order_payload()).encode("utf-8"))
        url = reverse("order-detail", kwargs={"order_uid": "test-order-123"})

        first = self.client.get(url)
        self.executor.shutdown(wait=True)
        second = self.client.get(url)

        self.assertEqual(first.status_code, status.HTTP_200_OK)
        self.assertEqual(second.status_code, status.HTTP_200_OK)
        self.assertEqual(first.json()["source"], "database")
        self.assertEqual(second.json()["source"], "cache")
        self.assertEqual(first.json()["order"], second.json()["order"])
        self.assertEqual(first.json()["order"], make_order_payload())
        self.assertEqual(set(first.json()["timing"]), {"total", "fetch", "source"})

    def test_get_order_not_found(self):
        url = reverse("order-detail", kwargs={"order_uid": "missing"})
        response = self.client.get(url)

        self.assertEqual(response.status_code, status.HTTP_404_NOT_FOUND)
        self.assertEqual(response.json()["detail"], "Order not found")

    def test_get_order_without_id(self):
        response = self.client.get("/api/order/")
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_get_order_store_failure(self):
        url = reverse("order-detail", kwargs={"order_uid": "test-order-123"})
        with patch.object(self.store, "get", side_effect=TransportError("refused")):
            response = self.client.get(url)

        self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)

    def test_bulk_success(self):
        self.store.upsert(make_order("a"))
        self.store.upsert(make_order("b"))

        response = self.client.post(
            reverse("orders-bulk"),
            {"operations": ["get", "delete"], "order_ids": ["a", "b"]},
            content_type="application/json",
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()["status"], "success")
        self.assertFalse(Order.objects.filter(pk="b").exists())

    def test_bulk_accepts_legacy_field_name(self):
        self.store.upsert(make_order("a"))

        response = self.client.post(
            reverse("orders-bulk"),
            {"opertaions": ["delete"], "order_ids": ["a"]},
            content_type="application/json",
        )

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertFalse(Order.objects.filter(pk="a").exists())

    def test_bulk_malformed_body(self):
        response = self.client.post(
            reverse("orders-bulk"), "{broken", content_type="application/json"
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

        response = self.client.post(
            reverse("orders-bulk"), {"operations": "get"}, content_type="application/json"
        )
        self.assertEqual(response.status_code, status.HTTP_400_BAD_REQUEST)

    def test_bulk_failure_aborts_everything(self):
        self.store.upsert(make_order("a"))

        response = self.client.post(
            reverse("orders-bulk"),
            {"operations": ["delete", "delete"], "order_ids": ["a", "missing"]},
            content_type="application/json",
        )

        self.assertEqual(response.status_code, status.HTTP_500_INTERNAL_SERVER_ERROR)
        self.assertEqual(response.json()["status"], "error")
        self.assertIn("missing", response.json()["message"])
        self.assertTrue(Order.objects.filter(pk="a").exists())

    def test_health(self):
        response = self.client.get(reverse("health"))

        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.json()["status"], "healthy")
        self.assertIn("timestamp", response.json())


class ManagementCommandTests(TestCase):
    """Тесты для management-команд сервиса."""

    def setUp(self):
        caches["default"].clear()

    @patch("orders.consumer.close_old_connections")
    @patch("orders.management.commands.run_kafka_consumer.stop_on_signals")
    @patch("orders.management.commands.run_kafka_consumer.get_consumer")
    def test_run_kafka_consumer_ingests_orders(self, mock_get_consumer, mock_stop_on_signals, _):
        holder = {}
        mock_stop_on_signals.side_effect = lambda consumer: holder.setdefault("consumer", consumer)
        message = create_mock_kafka_message(make_order_payload(), offset=0)
        source = FakeKafkaConsumer([message], on_exhausted=lambda: holder["consumer"].stop())
        mock_get_consumer.return_value = source

        call_command("run_kafka_consumer", stdout=StringIO())

        self.assertTrue(Order.objects.filter(pk="test-order-123").exists())
        source.commit.assert_called_once()
        mock_get_consumer.assert_called_once_with("orders", group_id="order-service")

    @patch("orders.management.commands.publish_orders.get_producer")
    def test_publish_single_order(self, mock_get_producer):
        mock_producer = MagicMock()
        mock_get_producer.return_value = mock_producer

        call_command("publish_orders", stdout=StringIO())

        mock_producer.send.assert_called_once()
        args, kwargs = mock_producer.send.call_args
        self.assertEqual(args[0], "orders")
        self.assertEqual(kwargs["key"], "test-order-123")
        self.assertEqual(kwargs["value"]["track_number"], "WBILMTESTTRACK")
        # Сгенерированный заказ проходит декодирование консьюмера
        decode_order(json.dumps(kwargs["value"]))
        mock_producer.flush.assert_called_once()

    @patch("orders.management.commands.publish_orders.get_producer")
    def test_publish_seed_orders(self, mock_get_producer):
        mock_producer = MagicMock()
        mock_get_producer.return_value = mock_producer

        call_command("publish_orders", count=3, stdout=StringIO())

        keys = [c.kwargs["key"] for c in mock_producer.send.call_args_list]
        self.assertEqual(keys, ["test-order-1", "test-order-2", "test-order-3"])

    @patch("orders.management.commands.publish_orders.get_producer", return_value=None)
    def test_publish_without_producer(self, _):
        with self.assertRaises(CommandError):
            call_command("publish_orders", stdout=StringIO())

    @patch("orders.management.commands.serve.build_consumer")
    @patch("orders.management.commands.serve.call_command")
    def test_serve_startup_sequence(self, mock_call_command, mock_build_consumer):
        OrderStore().upsert(make_order())
        consumer = MagicMock()
        mock_build_consumer.return_value = consumer

        call_command("serve", "127.0.0.1:8000", stdout=StringIO())

        called = [c.args[0] for c in mock_call_command.call_args_list]
        self.assertEqual(called, ["migrate", "runserver"])
        consumer.start.assert_called_once()
        consumer.stop.assert_called_once()
        # Кэш прогрет заказами из БД
        self.assertIsNotNone(OrderCache().get("test-order-123"))

    @patch("orders.management.commands.serve.call_command")
    def test_serve_fails_without_database(self, mock_call_command):
        with patch.object(OrderStore, "ping", side_effect=TransportError("refused")):
            with self.assertRaises(CommandError):
                call_command("serve", stdout=StringIO())
        mock_call_command.assert_not_called()

    @patch("orders.management.commands.serve.build_consumer")
    @patch("orders.management.commands.serve.call_command")
    def test_serve_survives_preload_failure(self, mock_call_command, mock_build_consumer):
        OrderStore().upsert(make_order())

        with patch.object(OrderCache, "preload", side_effect=TransportError("refused")):
            call_command("serve", "--no-consumer", stdout=StringIO())

        mock_build_consumer.assert_not_called()
        self.assertEqual(mock_call_command.call_count, 2)


class ServiceSettingsTests(TestCase):
    def test_defaults_are_valid(self):
        service_settings = get_service_settings()
        self.assertEqual(service_settings.kafka_topic, "orders")

    @override_settings(ORDER_CACHE_TTL=0)
    def test_non_positive_ttl(self):
        with self.assertRaises(ImproperlyConfigured):
            get_service_settings()

    @override_settings(KAFKA_BROKERS=[])
    def test_brokers_required(self):
        with self.assertRaises(ImproperlyConfigured):
            get_service_settings()

import enum
import logging
import threading
import time

from django.db import close_old_connections, connections
from kafka.errors import KafkaError

from orders import ports
from orders.exceptions import (
    OrderServiceError,
    OrderValidationError,
    SerializationError,
    TransportError,
)
from orders.serializers import decode_order

logger = logging.getLogger(__name__)

FETCH_ERRORS = (KafkaError, OSError, TransportError)


class ConsumerState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    STOPPED = "stopped"


class QueueConsumer(ports.OrderConsumer):
    """Sequential ingestion loop: fetch, decode, validate, persist.

    ``connect`` returns a kafka-python ``KafkaConsumer`` (or anything with
    ``poll``/``commit``/``close``), or ``None`` while the broker is
    unreachable. It is called lazily and again after failures.

    The offset of a record is committed once its handling has finished,
    whatever the outcome, so a crash mid-message leads to redelivery while a
    logged failure does not block the partition.
    """

    def __init__(
        self,
        connect,
        store,
        timeout=10.0,
        retry_delay=5.0,
        poll_timeout=1.0,
        start_delay=0.0,
        manage_connections=True,
        clock=time.monotonic,
    ):
        self._connect = connect
        self.store = store
        self.timeout = timeout
        self.retry_delay = retry_delay
        self.poll_timeout = poll_timeout
        self.start_delay = start_delay
        self.manage_connections = manage_connections
        self._clock = clock
        self._source = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()
        self._thread = None
        self.state = ConsumerState.IDLE

    @property
    def stopping(self):
        return self._stop_event.is_set()

    def _mark_running(self):
        with self._lock:
            if self.state is not ConsumerState.IDLE:
                raise RuntimeError(f"Consumer cannot start from state {self.state.value}")
            self.state = ConsumerState.RUNNING

    def start(self):
        self._mark_running()
        self._thread = threading.Thread(
            target=self._run_in_thread, name="order-consumer", daemon=True
        )
        self._thread.start()

    def run(self):
        self._mark_running()
        self._loop()

    def stop(self, timeout=None):
        self._stop_event.set()
        thread = self._thread
        if thread is not None and thread is not threading.current_thread():
            thread.join(timeout)
        with self._lock:
            if self.state is ConsumerState.IDLE:
                self.state = ConsumerState.STOPPED

    def _run_in_thread(self):
        try:
            self._loop()
        finally:
            if self.manage_connections:
                connections.close_all()

    def _loop(self):
        logger.info("Starting Kafka consumer...")
        try:
            if self.start_delay:
                self._stop_event.wait(self.start_delay)
            while not self._stop_event.is_set():
                for record in self._fetch():
                    self.handle_record(record)
        finally:
            self._close_source()
            self.state = ConsumerState.STOPPED
            logger.info("Kafka consumer stopped")

    def _fetch(self):
        try:
            if self._source is None:
                self._source = self._connect()
                if self._source is None:
                    raise TransportError("Kafka consumer is unavailable")
            batches = self._source.poll(
                timeout_ms=int(self.poll_timeout * 1000), max_records=1
            )
        except FETCH_ERRORS as e:
            logger.error(f"Error reading message: {e}. Retrying in {self.retry_delay} seconds...")
            self._stop_event.wait(self.retry_delay)
            return []
        return [record for records in batches.values() for record in records]

    def handle_record(self, record):
        location = f"{record.topic}[{record.partition}]@{record.offset}"
        logger.info(f"Received message {location}")
        if self.manage_connections:
            close_old_connections()
        try:
            order = self.process_message(record.value)
        except (OrderValidationError, SerializationError) as e:
            logger.warning(f"Rejected message {location}: {e}")
        except (OrderServiceError, TimeoutError) as e:
            logger.error(f"Failed to save order from message {location}: {e}")
        except Exception:
            logger.exception(f"Unexpected error while processing message {location}")
        else:
            logger.info(f"Successfully processed order {order.order_uid} from {location}")
        self._commit(location)

    def process_message(self, raw):
        started = self._clock()
        order = decode_order(raw)
        if not order.order_uid:
            raise OrderValidationError("Order UID is required")

        remaining = self.timeout - (self._clock() - started)
        if remaining <= 0:
            raise TimeoutError(
                f"Processing of order {order.order_uid} exceeded {self.timeout}s"
            )

        logger.info(f"Processing order: {order.order_uid}")
        self.store.with_transaction(lambda tx: tx.upsert(order), timeout=remaining)
        return order

    def _commit(self, location):
        try:
            # poll(max_records=1): текущая позиция указывает сразу за обработанной записью
            self._source.commit()
        except (KafkaError, OSError) as e:
            logger.error(f"Failed to commit offset after {location}: {e}")

    def _close_source(self):
        if self._source is None:
            return
        try:
            self._source.close()
        except (KafkaError, OSError) as e:
            logger.warning(f"Failed to close Kafka consumer: {e}")
        self._source = None

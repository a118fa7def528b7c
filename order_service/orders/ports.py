"""Interfaces the ingestion and query code depends on.

Concrete adapters live in ``orders.repository`` (Django ORM),
``orders.cache`` (Django cache framework) and ``orders.consumer``
(kafka-python). Tests substitute any of them independently.
"""

from abc import ABC, abstractmethod


class OrderTransaction(ABC):
    @abstractmethod
    def get(self, order_uid):
        """Return the order or raise ``OrderNotFound``."""

    @abstractmethod
    def upsert(self, order):
        """Insert the order or fully replace the stored one."""

    @abstractmethod
    def delete(self, order_uid):
        """Remove the order or raise ``OrderNotFound``."""

    @abstractmethod
    def commit(self):
        pass

    @abstractmethod
    def rollback(self):
        pass


class OrderRepository(ABC):
    @abstractmethod
    def get(self, order_uid):
        pass

    @abstractmethod
    def upsert(self, order):
        pass

    @abstractmethod
    def get_all(self):
        """Return every order, newest ``date_created`` first."""

    @abstractmethod
    def delete(self, order_uid):
        pass

    @abstractmethod
    def begin(self, timeout=None) -> OrderTransaction:
        pass

    @abstractmethod
    def with_transaction(self, fn, timeout=None):
        """Run ``fn(tx)`` in one transaction, committing only if it returns."""


class OrderCache(ABC):
    @abstractmethod
    def set(self, order):
        pass

    @abstractmethod
    def get(self, order_uid):
        """Return the cached order, or ``None`` on a miss.

        Backend failures raise, so a miss and an outage stay distinguishable.
        """

    @abstractmethod
    def preload(self, orders):
        pass

    @abstractmethod
    def delete(self, order_uid):
        pass


class OrderConsumer(ABC):
    @abstractmethod
    def start(self):
        pass

    @abstractmethod
    def stop(self, timeout=None):
        pass

import json

from rest_framework import serializers

from orders.exceptions import SerializationError
from orders.models import Order


class StrictCharField(serializers.CharField):
    """CharField that accepts only JSON strings, no number coercion."""

    def to_internal_value(self, data):
        if not isinstance(data, str):
            self.fail("invalid")
        return super().to_internal_value(data)


class StrictIntegerField(serializers.IntegerField):
    """IntegerField that accepts only JSON integers.

    Numeric strings, floats and booleans are rejected instead of converted.
    """

    def to_internal_value(self, data):
        if isinstance(data, (str, float, bool)):
            self.fail("invalid")
        return super().to_internal_value(data)


def _text(**kwargs):
    return StrictCharField(
        allow_blank=True, default="", trim_whitespace=False, **kwargs
    )


def _number():
    return StrictIntegerField(default=0)


class DeliverySerializer(serializers.Serializer):
    name = _text()
    phone = _text()
    zip = _text()
    city = _text()
    address = _text()
    region = _text()
    email = _text()


class PaymentSerializer(serializers.Serializer):
    transaction = _text()
    request_id = _text()
    currency = _text()
    provider = _text()
    amount = _number()
    payment_dt = _number()
    bank = _text()
    delivery_cost = _number()
    goods_total = _number()
    custom_fee = _number()


class ItemSerializer(serializers.Serializer):
    chrt_id = _number()
    track_number = _text()
    price = _number()
    rid = _text()
    name = _text()
    sale = _number()
    size = _text()
    total_price = _number()
    nm_id = _number()
    brand = _text()
    status = _number()


class OrderSerializer(serializers.Serializer):
    """Wire shape of the order aggregate.

    Used for queue messages, cache values and API responses alike. Absent
    fields take zero values; an empty ``order_uid`` passes decoding and is
    rejected later, before persistence.
    """

    order_uid = _text(max_length=255)
    track_number = _text(max_length=255)
    entry = _text(max_length=255)
    delivery = DeliverySerializer(default=dict)
    payment = PaymentSerializer(default=dict)
    items = ItemSerializer(many=True, default=list)
    locale = _text(max_length=255)
    internal_signature = _text(max_length=255)
    customer_id = _text(max_length=255)
    delivery_service = _text(max_length=255)
    shardkey = _text(max_length=255)
    sm_id = _number()
    date_created = serializers.DateTimeField(allow_null=True, default=None)
    oof_shard = _text(max_length=255)

    def create(self, validated_data):
        # Только сборка агрегата, запись в БД делает OrderStore
        return Order(**validated_data)


class BulkOperationsSerializer(serializers.Serializer):
    operations = serializers.ListField(child=StrictCharField())
    order_ids = serializers.ListField(child=StrictCharField())

    LEGACY_OPERATIONS_FIELD = "opertaions"

    def to_internal_value(self, data):
        if (
            isinstance(data, dict)
            and "operations" not in data
            and self.LEGACY_OPERATIONS_FIELD in data
        ):
            data = dict(data)
            data["operations"] = data.pop(self.LEGACY_OPERATIONS_FIELD)
        return super().to_internal_value(data)


def order_from_data(payload):
    if not isinstance(payload, dict):
        raise SerializationError("Order payload must be a JSON object")
    serializer = OrderSerializer(data=payload)
    if not serializer.is_valid():
        raise SerializationError(f"Invalid order payload: {serializer.errors}")
    return serializer.save()


def decode_order(raw):
    try:
        if isinstance(raw, (bytes, bytearray)):
            raw = raw.decode("utf-8")
        payload = json.loads(raw)
    except (UnicodeDecodeError, ValueError) as e:
        raise SerializationError(f"Failed to unmarshal order: {e}") from e
    return order_from_data(payload)


def order_to_data(order):
    return OrderSerializer(order).data


def encode_order(order):
    try:
        return json.dumps(order_to_data(order), ensure_ascii=False)
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Failed to marshal order: {e}") from e

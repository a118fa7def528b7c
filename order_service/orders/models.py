from django.db import models


class Order(models.Model):
    order_uid = models.CharField(max_length=255, primary_key=True)
    track_number = models.CharField(max_length=255, blank=True, default="")
    entry = models.CharField(max_length=255, blank=True, default="")
    delivery = models.JSONField(default=dict)
    payment = models.JSONField(default=dict)
    items = models.JSONField(default=list)
    locale = models.CharField(max_length=255, blank=True, default="")
    internal_signature = models.CharField(max_length=255, blank=True, default="")
    customer_id = models.CharField(max_length=255, blank=True, default="")
    delivery_service = models.CharField(max_length=255, blank=True, default="")
    shardkey = models.CharField(max_length=255, blank=True, default="")
    sm_id = models.IntegerField(default=0)
    date_created = models.DateTimeField(null=True, blank=True)
    oof_shard = models.CharField(max_length=255, blank=True, default="")

    # Всё, кроме ключа, перезаписывается при upsert
    REPLACEABLE_FIELDS = [
        "track_number",
        "entry",
        "delivery",
        "payment",
        "items",
        "locale",
        "internal_signature",
        "customer_id",
        "delivery_service",
        "shardkey",
        "sm_id",
        "date_created",
        "oof_shard",
    ]

    class Meta:
        db_table = "orders"
        ordering = ["-date_created"]
        indexes = [
            models.Index(fields=["date_created"], name="idx_orders_date_created"),
            models.Index(fields=["customer_id"], name="idx_orders_customer_id"),
        ]

    def __str__(self):
        return f"Order {self.order_uid} - Track: {self.track_number}"

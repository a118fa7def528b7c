from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = []

    operations = [
        migrations.CreateModel(
            name="Order",
            fields=[
                ("order_uid", models.CharField(max_length=255, primary_key=True, serialize=False)),
                ("track_number", models.CharField(blank=True, default="", max_length=255)),
                ("entry", models.CharField(blank=True, default="", max_length=255)),
                ("delivery", models.JSONField(default=dict)),
                ("payment", models.JSONField(default=dict)),
                ("items", models.JSONField(default=list)),
                ("locale", models.CharField(blank=True, default="", max_length=255)),
                ("internal_signature", models.CharField(blank=True, default="", max_length=255)),
                ("customer_id", models.CharField(blank=True, default="", max_length=255)),
                ("delivery_service", models.CharField(blank=True, default="", max_length=255)),
                ("shardkey", models.CharField(blank=True, default="", max_length=255)),
                ("sm_id", models.IntegerField(default=0)),
                ("date_created", models.DateTimeField(blank=True, null=True)),
                ("oof_shard", models.CharField(blank=True, default="", max_length=255)),
            ],
            options={
                "db_table": "orders",
                "ordering": ["-date_created"],
                "indexes": [
                    models.Index(fields=["date_created"], name="idx_orders_date_created"),
                    models.Index(fields=["customer_id"], name="idx_orders_customer_id"),
                ],
            },
        ),
    ]

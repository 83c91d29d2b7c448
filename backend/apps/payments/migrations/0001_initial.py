import django.db.models.deletion
import django.utils.timezone
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        ("orders", "0001_initial"),
    ]

    operations = [
        migrations.CreateModel(
            name="Payment",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("provider", models.CharField(default="razorpay", max_length=50)),
                ("transaction_id", models.CharField(max_length=100, unique=True)),
                ("provider_payment_id", models.CharField(blank=True, db_index=True, max_length=100)),
                ("amount", models.PositiveBigIntegerField()),
                ("currency", models.CharField(default="INR", max_length=3)),
                ("status", models.CharField(choices=[("PENDING", "Pending"), ("CAPTURED", "Captured"), ("FAILED", "Failed"), ("REFUNDED", "Refunded")], db_index=True, default="PENDING", max_length=20)),
                ("method", models.CharField(blank=True, max_length=30)),
                ("gateway_payload", models.JSONField(blank=True, default=dict)),
                ("settled_via", models.CharField(blank=True, choices=[("webhook", "Webhook"), ("client", "Client Confirmation"), ("reconciliation", "Reconciliation")], max_length=20)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                ("settled_at", models.DateTimeField(blank=True, null=True)),
                ("order", models.ForeignKey(on_delete=django.db.models.deletion.PROTECT, related_name="payments", to="orders.order")),
            ],
            options={
                "indexes": [models.Index(fields=["status", "created_at"], name="payments_pa_status_0a8c1e_idx")],
                "constraints": [
                    models.UniqueConstraint(condition=models.Q(("status", "CAPTURED")), fields=("order",), name="one_captured_payment_per_order"),
                    models.CheckConstraint(condition=models.Q(("amount__gt", 0)), name="payment_amount_positive"),
                ],
            },
        ),
    ]

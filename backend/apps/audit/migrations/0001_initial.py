import django.db.models.deletion
import django.utils.timezone
from django.conf import settings
from django.db import migrations, models


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="AuditLog",
            fields=[
                ("id", models.BigAutoField(auto_created=True, primary_key=True, serialize=False, verbose_name="ID")),
                ("action", models.CharField(choices=[("order_created", "Order Created"), ("order_cancelled", "Order Cancelled"), ("payment_initiated", "Payment Initiated"), ("payment_captured", "Payment Captured"), ("payment_failed", "Payment Failed"), ("settlement_anomaly", "Settlement Anomaly")], max_length=50)),
                ("reference_id", models.CharField(help_text="Order number / gateway transaction id", max_length=100)),
                ("metadata", models.JSONField(default=dict)),
                ("created_at", models.DateTimeField(default=django.utils.timezone.now)),
                ("user", models.ForeignKey(blank=True, null=True, on_delete=django.db.models.deletion.SET_NULL, to=settings.AUTH_USER_MODEL)),
            ],
            options={
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["action"], name="audit_audit_action_5f1b2e_idx"),
                    models.Index(fields=["reference_id"], name="audit_audit_referen_9c3d4a_idx"),
                ],
            },
        ),
    ]

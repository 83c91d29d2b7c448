from django.test import TestCase
from django.contrib.auth import get_user_model
from rest_framework.test import APIClient

from apps.audit.models import AuditLog
from apps.audit.services import AuditService

User = get_user_model()

class AuditLogTestCase(TestCase):
    def setUp(self):
        self.user = User.objects.create_user(email="buyer@example.com", password="pass")

    def test_immutability(self):
        log = AuditLog.objects.create(
            user=self.user, action="order_created", reference_id="JW250101ABCDEF"
        )

        log.action = "tampered"
        with self.assertRaises(RuntimeError):
            log.save()

        with self.assertRaises(RuntimeError):
            log.delete()

    def test_bulk_mutation_blocked(self):
        AuditService.settlement_anomaly("order_X1", "unknown_transaction")

        with self.assertRaises(RuntimeError):
            AuditLog.objects.filter(action="settlement_anomaly").update(reference_id="x")
        with self.assertRaises(RuntimeError):
            AuditLog.objects.all().delete()

    def test_anomaly_metadata_merged(self):
        AuditService.settlement_anomaly("order_X1", "amount_mismatch", {"expected": 100, "received": 90})

        log = AuditLog.objects.get(reference_id="order_X1")
        self.assertEqual(log.action, "settlement_anomaly")
        self.assertEqual(log.metadata, {"reason": "amount_mismatch", "expected": 100, "received": 90})
        self.assertIsNone(log.user)


class AuditLogAPITestCase(TestCase):
    def setUp(self):
        self.client = APIClient()
        self.admin = User.objects.create_user(email="ops@example.com", password="pass", role="ADMIN")
        self.customer = User.objects.create_user(email="buyer@example.com", password="pass")
        AuditService.settlement_anomaly("order_A", "conflicting_settlement")
        AuditService.settlement_anomaly("order_B", "unknown_transaction")

    def test_admin_filters_by_reference(self):
        self.client.force_authenticate(user=self.admin)
        res = self.client.get("/api/v1/audit/", {"reference_id": "order_A"})

        self.assertEqual(res.status_code, 200)
        self.assertEqual(res.data["count"], 1)
        self.assertEqual(res.data["results"][0]["metadata"]["reason"], "conflicting_settlement")

    def test_customer_forbidden(self):
        self.client.force_authenticate(user=self.customer)
        res = self.client.get("/api/v1/audit/")
        self.assertEqual(res.status_code, 403)

    def test_filter_by_anomaly_reason(self):
        self.client.force_authenticate(user=self.admin)
        res = self.client.get("/api/v1/audit/", {"reason": "unknown_transaction"})

        self.assertEqual(res.data["count"], 1)
        self.assertEqual(res.data["results"][0]["reference_id"], "order_B")
        self.assertEqual(res.data["results"][0]["reason"], "unknown_transaction")
        self.assertIsNone(res.data["results"][0]["user_email"])

    def test_queryset_helpers(self):
        AuditLog.objects.create(user=self.customer, action="order_created", reference_id="order_A")

        self.assertEqual(AuditLog.objects.anomalies().count(), 2)
        self.assertEqual(AuditLog.objects.for_reference("order_A").count(), 2)
        self.assertEqual(AuditLog.objects.anomalies("conflicting_settlement").get().reference_id, "order_A")

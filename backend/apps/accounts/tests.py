# apps/accounts/tests.py
from django.test import TestCase
from django.contrib.auth import get_user_model
from django.core.cache import cache
from rest_framework.test import APIClient
from rest_framework import status

User = get_user_model()

class UserManagerTestCase(TestCase):
    def test_create_user_manager(self):
        user = User.objects.create_user(email="Buyer@Example.com ", password="password123")
        self.assertEqual(user.email, "buyer@example.com")
        self.assertTrue(user.check_password("password123"))
        self.assertEqual(user.role, "CUSTOMER")
        self.assertFalse(user.is_staff)
        self.assertFalse(user.is_store_admin)

    def test_create_superuser(self):
        admin = User.objects.create_superuser(email="root@example.com", password="adminpass")
        self.assertTrue(admin.is_staff)
        self.assertTrue(admin.is_superuser)
        self.assertTrue(admin.is_store_admin)

    def test_email_required(self):
        with self.assertRaises(ValueError):
            User.objects.create_user(email=None, password="pass")

class AuthAPITestCase(TestCase):
    def setUp(self):
        cache.clear()
        self.client = APIClient()
        self.user = User.objects.create_user(email="buyer@example.com", password="testpass")

    def _login(self):
        return self.client.post(
            "/api/v1/auth/login/",
            {"email": "BUYER@example.com", "password": "testpass"},
            format="json",
        )

    def test_login_issues_token_pair(self):
        response = self._login()
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertIn("access", response.data)
        self.assertIn("refresh", response.data)
        self.assertEqual(response.data["user"]["email"], "buyer@example.com")

    def test_login_wrong_password(self):
        response = self.client.post(
            "/api/v1/auth/login/",
            {"email": "buyer@example.com", "password": "nope"},
            format="json",
        )
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_me_endpoint_authenticated(self):
        self.client.force_authenticate(user=self.user)
        response = self.client.get("/api/v1/auth/me/")
        self.assertEqual(response.status_code, status.HTTP_200_OK)
        self.assertEqual(response.data["email"], self.user.email)

    def test_me_endpoint_unauthenticated(self):
        response = self.client.get("/api/v1/auth/me/")
        self.assertEqual(response.status_code, status.HTTP_401_UNAUTHORIZED)

    def test_logout_blocklists_access_token(self):
        tokens = self._login().data
        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {tokens['access']}")

        self.assertEqual(self.client.get("/api/v1/auth/me/").status_code, status.HTTP_200_OK)

        response = self.client.post("/api/v1/auth/logout/", {"refresh": tokens["refresh"]}, format="json")
        self.assertEqual(response.status_code, status.HTTP_200_OK)

        self.assertEqual(self.client.get("/api/v1/auth/me/").status_code, status.HTTP_401_UNAUTHORIZED)

    def test_inactive_user_token_refused(self):
        tokens = self._login().data
        self.user.is_active = False
        self.user.save(update_fields=["is_active"])

        self.client.credentials(HTTP_AUTHORIZATION=f"Bearer {tokens['access']}")
        self.assertEqual(self.client.get("/api/v1/auth/me/").status_code, status.HTTP_401_UNAUTHORIZED)

from django.contrib.auth.models import AbstractBaseUser, PermissionsMixin
from django.db import models
from django.utils import timezone
from .managers import UserManager

class User(AbstractBaseUser, PermissionsMixin):
    """
    Custom User model where email is the unique identifier.
    """
    ROLE_CHOICES = (
        ("CUSTOMER", "Customer"),
        ("ADMIN", "Admin"),
    )

    email = models.EmailField(unique=True, db_index=True)
    phone = models.CharField(max_length=15, blank=True)
    full_name = models.CharField(max_length=120, blank=True)
    role = models.CharField(max_length=20, choices=ROLE_CHOICES, default="CUSTOMER")

    is_active = models.BooleanField(default=True)
    is_staff = models.BooleanField(default=False)

    created_at = models.DateTimeField(default=timezone.now)

    objects = UserManager()

    USERNAME_FIELD = "email"
    REQUIRED_FIELDS = []

    @property
    def is_store_admin(self):
        return self.role == "ADMIN" or self.is_staff

    def __str__(self):
        return self.email

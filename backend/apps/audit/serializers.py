from rest_framework import serializers
from .models import AuditLog


class AuditLogSerializer(serializers.ModelSerializer):
    user_email = serializers.EmailField(source="user.email", read_only=True, default=None)
    reason = serializers.CharField(read_only=True)

    class Meta:
        model = AuditLog
        fields = ("id", "action", "reason", "reference_id", "user_email", "metadata", "created_at")
        read_only_fields = fields

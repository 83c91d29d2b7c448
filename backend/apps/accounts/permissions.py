# apps/accounts/permissions.py
from rest_framework import permissions

class IsOwner(permissions.BasePermission):
    """
    Object-level permission: only the owning customer may act on an order
    or anything hanging off one (payments).
    """
    def has_object_permission(self, request, view, obj):
        # 1. Linked User Field (Order)
        if hasattr(obj, 'user_id'):
            return obj.user_id == request.user.id

        # 2. Linked Order (Payment)
        if hasattr(obj, 'order'):
            return obj.order.user_id == request.user.id

        return False

class IsStoreAdmin(permissions.BasePermission):
    def has_permission(self, request, view):
        return bool(
            request.user and
            request.user.is_authenticated and
            request.user.is_store_admin
        )

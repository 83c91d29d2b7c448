from rest_framework.views import APIView
from rest_framework.response import Response
from rest_framework.pagination import PageNumberPagination

from apps.accounts.permissions import IsStoreAdmin
from .models import AuditLog
from .serializers import AuditLogSerializer


class AuditPagination(PageNumberPagination):
    page_size = 50
    max_page_size = 100


class AuditLogListAPIView(APIView):
    """
    Admin View for System Audit Logs.
    Filter by reference_id (order number or gateway transaction id), action,
    or anomaly reason (?reason=amount_mismatch implies action=settlement_anomaly).
    """
    permission_classes = [IsStoreAdmin]
    pagination_class = AuditPagination

    def get(self, request):
        qs = AuditLog.objects.select_related('user')

        ref_id = request.query_params.get('reference_id')
        if ref_id:
            qs = qs.for_reference(ref_id)

        reason = request.query_params.get('reason')
        if reason:
            qs = qs.anomalies(reason)

        action = request.query_params.get('action')
        if action:
            qs = qs.filter(action=action)

        paginator = self.pagination_class()
        page = paginator.paginate_queryset(qs.order_by("-created_at"), request)
        serializer = AuditLogSerializer(page, many=True)
        return paginator.get_paginated_response(serializer.data)

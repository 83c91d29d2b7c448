import json

from django.contrib import admin
from django.contrib.auth import get_user_model
from django.utils.html import format_html
from django.utils.timezone import localtime
from import_export import resources, fields, widgets
from import_export.admin import ExportMixin

from .models import AuditLog

User = get_user_model()

ACTION_COLORS = {
    'order_created': '#28a745',
    'order_cancelled': '#6c757d',
    'payment_initiated': '#17a2b8',
    'payment_captured': '#007bff',
    'payment_failed': '#fd7e14',
    'settlement_anomaly': '#dc3545',
}


class AuditLogResource(resources.ModelResource):
    user = fields.Field(
        column_name='user',
        attribute='user',
        widget=widgets.ForeignKeyWidget(User, 'email')
    )
    reason = fields.Field(column_name='reason')

    class Meta:
        model = AuditLog
        fields = ('id', 'created_at', 'action', 'reference_id', 'user', 'reason', 'metadata')
        export_order = fields

    def dehydrate_reason(self, log):
        return log.reason


class AnomalyReasonFilter(admin.SimpleListFilter):
    """Narrows settlement anomalies by why settlement refused them."""
    title = 'anomaly reason'
    parameter_name = 'reason'

    def lookups(self, request, model_admin):
        return (
            ('unknown_transaction', 'Unknown transaction'),
            ('conflicting_settlement', 'Conflicting settlement'),
            ('amount_mismatch', 'Amount mismatch'),
        )

    def queryset(self, request, queryset):
        if self.value():
            return queryset.anomalies(self.value())
        return queryset


@admin.register(AuditLog)
class AuditLogAdmin(ExportMixin, admin.ModelAdmin):
    """
    Read-only. Settlement anomalies land here for manual review
    (refunds for captures on cancelled orders, amount mismatches).
    """
    resource_classes = [AuditLogResource]
    list_display = ('action_badge', 'reference_id', 'reason', 'user_email', 'created_at_local')
    list_filter = ('action', AnomalyReasonFilter, 'created_at')
    search_fields = ('reference_id', 'user__email')
    list_select_related = ('user',)
    date_hierarchy = 'created_at'
    list_per_page = 50

    fields = ('action', 'reference_id', 'user', 'created_at', 'metadata_pretty')
    readonly_fields = fields

    @admin.display(description='Action', ordering='action')
    def action_badge(self, obj):
        return format_html(
            '<span style="background-color: {}; color: white; padding: 2px 6px; border-radius: 3px;">{}</span>',
            ACTION_COLORS.get(obj.action, '#6c757d'),
            obj.get_action_display()
        )

    @admin.display(description='Reason')
    def reason(self, obj):
        return obj.reason

    @admin.display(description='User', ordering='user__email')
    def user_email(self, obj):
        return obj.user.email if obj.user else "System"

    @admin.display(description='Timestamp', ordering='created_at')
    def created_at_local(self, obj):
        return localtime(obj.created_at).strftime('%d/%m/%Y %H:%M:%S')

    @admin.display(description='Metadata')
    def metadata_pretty(self, obj):
        return format_html('<pre>{}</pre>', json.dumps(obj.metadata, indent=2, sort_keys=True, default=str))

    def has_add_permission(self, request):
        return False

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

from django.apps import apps
from django.contrib import admin
from django.contrib import messages
from django.utils.html import format_html
from django.utils.timezone import localtime

from apps.utils.exceptions import BusinessLogicException

from .models import Payment


@admin.register(Payment)
class PaymentAdmin(admin.ModelAdmin):
    """
    Read-only view of payment attempts. Status only changes through
    settlement; the one action asks the gateway instead of trusting a click.
    """
    list_display = (
        'transaction_id',
        'order_info',
        'customer_email',
        'amount_display',
        'status_badge',
        'settled_via',
        'created_at_date'
    )
    list_filter = (
        'status',
        'settled_via',
        'created_at',
    )
    search_fields = (
        'transaction_id',
        'provider_payment_id',
        'order__order_number',
        'order__user__email',
    )
    list_select_related = ('order', 'order__user')
    raw_id_fields = ('order',)
    list_per_page = 25
    actions = ['reconcile_with_gateway']

    fieldsets = (
        ('Payment Information', {
            'fields': ('order', 'provider', 'amount', 'currency', 'status', 'method')
        }),
        ('Provider Details', {
            'fields': ('transaction_id', 'provider_payment_id', 'settled_via', 'gateway_payload'),
            'classes': ('collapse',)
        }),
        ('Timestamps', {
            'fields': ('created_at', 'updated_at', 'settled_at'),
            'classes': ('collapse',)
        }),
    )

    readonly_fields = (
        'order', 'provider', 'amount', 'currency', 'status', 'method', 'transaction_id',
        'provider_payment_id', 'settled_via', 'gateway_payload', 'created_at', 'updated_at', 'settled_at',
    )

    def has_add_permission(self, request):
        return False

    def has_delete_permission(self, request, obj=None):
        return False

    def order_info(self, obj):
        return obj.order.order_number
    order_info.short_description = "Order"
    order_info.admin_order_field = 'order__order_number'

    def customer_email(self, obj):
        return obj.order.user.email
    customer_email.short_description = "Customer"
    customer_email.admin_order_field = 'order__user__email'

    def amount_display(self, obj):
        return f"₹{obj.amount / 100:.2f}"
    amount_display.short_description = "Amount"
    amount_display.admin_order_field = 'amount'

    def status_badge(self, obj):
        colors = {
            'PENDING': '#ffc107',
            'CAPTURED': '#28a745',
            'FAILED': '#dc3545',
            'REFUNDED': '#6f42c1',
        }
        color = colors.get(obj.status, '#6c757d')
        return format_html(
            '<span style="background-color: {}; color: white; padding: 3px 8px; border-radius: 4px; font-size: 0.8em;">{}</span>',
            color,
            obj.get_status_display()
        )
    status_badge.short_description = "Status"

    def created_at_date(self, obj):
        if obj.created_at:
            return localtime(obj.created_at).strftime('%d/%m/%Y %H:%M')
        return "N/A"
    created_at_date.short_description = "Created"
    created_at_date.admin_order_field = 'created_at'

    @admin.action(description='Reconcile selected pending payments with Razorpay')
    def reconcile_with_gateway(self, request, queryset):
        from .services import ReconciliationService

        try:
            service = ReconciliationService(apps.get_app_config("payments").get_gateway())
        except BusinessLogicException as e:
            self.message_user(request, e.message, level=messages.ERROR)
            return

        settled = 0
        for payment in queryset.filter(status=Payment.PENDING):
            try:
                result = service.reconcile(payment)
            except BusinessLogicException as e:
                self.message_user(request, f"{payment.transaction_id}: {e.code}", level=messages.WARNING)
                continue
            if result is not None and result.applied:
                settled += 1
        self.message_user(request, f"{settled} payments settled from gateway state.")

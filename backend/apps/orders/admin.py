from django.contrib import admin
from django.contrib import messages
from django.contrib.auth import get_user_model
from django.utils.html import format_html
from django.utils.timezone import localtime
from import_export import resources, fields
from import_export.widgets import ForeignKeyWidget
from import_export.admin import ImportExportModelAdmin

from apps.utils.exceptions import BusinessLogicException

from .models import Order, OrderItem
from .services import OrderService

User = get_user_model()


class OrderResource(resources.ModelResource):
    # Linking User by email
    user = fields.Field(
        column_name='user_email',
        attribute='user',
        widget=ForeignKeyWidget(User, 'email')
    )

    class Meta:
        model = Order
        fields = (
            'id',
            'order_number',
            'user',
            'status',
            'payment_status',
            'subtotal',
            'shipping_charge',
            'total_amount',
            'created_at',
            'updated_at'
        )
        export_order = fields


class OrderItemInline(admin.TabularInline):
    model = OrderItem
    extra = 0
    readonly_fields = ('sku', 'product_name', 'quantity', 'price', 'subtotal')
    fields = readonly_fields
    can_delete = False
    show_change_link = False

    def subtotal(self, obj):
        if obj.price is None or obj.quantity is None:
            return "₹0.00"
        return f"₹{obj.line_total:.2f}"
    subtotal.short_description = "Subtotal"

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(Order)
class OrderAdmin(ImportExportModelAdmin):
    resource_class = OrderResource
    list_display = (
        'order_number',
        'customer_email',
        'status_badge',
        'payment_status',
        'total_amount_display',
        'stock_reserved',
        'created_at_date'
    )
    list_filter = ('status', 'payment_status', 'created_at')
    search_fields = ('order_number', 'user__email', 'user__full_name')
    list_select_related = ('user',)
    raw_id_fields = ('user',)
    inlines = [OrderItemInline]
    list_per_page = 25
    actions = ['mark_as_processing', 'mark_as_shipped', 'mark_as_delivered', 'cancel_orders']

    # payment_status is owned by settlement; never editable here
    readonly_fields = (
        'order_number', 'payment_status', 'subtotal', 'discount', 'shipping_charge',
        'total_amount', 'stock_reserved', 'created_at', 'updated_at', 'cancelled_at'
    )

    def customer_email(self, obj):
        return obj.user.email
    customer_email.short_description = "Customer"
    customer_email.admin_order_field = 'user__email'

    def status_badge(self, obj):
        colors = {
            'PENDING': '#6c757d',
            'CONFIRMED': '#007bff',
            'PROCESSING': '#ffc107',
            'SHIPPED': '#17a2b8',
            'DELIVERED': '#28a745',
            'CANCELLED': '#dc3545',
            'RETURNED': '#dc3545',
        }
        color = colors.get(obj.status, '#6c757d')
        return format_html(
            '<span style="background-color: {}; color: white; padding: 3px 8px; border-radius: 4px; font-size: 0.8em;">{}</span>',
            color,
            obj.get_status_display()
        )
    status_badge.short_description = "Status"

    def total_amount_display(self, obj):
        return f"₹{obj.total_amount:.2f}"
    total_amount_display.short_description = "Total Amount"
    total_amount_display.admin_order_field = 'total_amount'

    def created_at_date(self, obj):
        if obj.created_at:
            return localtime(obj.created_at).strftime('%d/%m/%Y %H:%M')
        return "N/A"
    created_at_date.short_description = "Created"
    created_at_date.admin_order_field = 'created_at'

    def mark_as_processing(self, request, queryset):
        updated = queryset.filter(status='CONFIRMED', payment_status='PAID').update(status='PROCESSING')
        self.message_user(request, f"{updated} orders marked as processing.")
    mark_as_processing.short_description = "Mark selected orders as Processing"

    def mark_as_shipped(self, request, queryset):
        updated = queryset.filter(status__in=['CONFIRMED', 'PROCESSING'], payment_status='PAID').update(status='SHIPPED')
        self.message_user(request, f"{updated} orders marked as shipped.")
    mark_as_shipped.short_description = "Mark selected orders as Shipped"

    def mark_as_delivered(self, request, queryset):
        updated = queryset.filter(status='SHIPPED').update(status='DELIVERED')
        self.message_user(request, f"{updated} orders marked as delivered.")
    mark_as_delivered.short_description = "Mark selected orders as Delivered"

    def cancel_orders(self, request, queryset):
        cancelled = 0
        for order in queryset:
            try:
                OrderService.cancel_order(order)
                cancelled += 1
            except BusinessLogicException as e:
                self.message_user(request, f"{order.order_number}: {e.message}", level=messages.WARNING)
        self.message_user(request, f"{cancelled} orders cancelled.")
    cancel_orders.short_description = "Cancel selected orders"

from django.contrib import admin
from import_export import resources
from import_export.admin import ImportExportModelAdmin

from .models import StockItem, InventoryTransaction


class StockItemResource(resources.ModelResource):
    class Meta:
        model = StockItem
        import_id_fields = ('sku',)
        fields = ('sku', 'name', 'price', 'total_stock', 'reserved_stock')
        export_order = fields


class InventoryTransactionInline(admin.TabularInline):
    model = InventoryTransaction
    extra = 0
    can_delete = False
    readonly_fields = ('transaction_type', 'quantity', 'reference', 'created_at')
    ordering = ('-created_at',)

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(StockItem)
class StockItemAdmin(ImportExportModelAdmin):
    resource_class = StockItemResource
    list_display = ('sku', 'name', 'price', 'total_stock', 'reserved_stock', 'available_display', 'updated_at')
    search_fields = ('sku', 'name')
    readonly_fields = ('reserved_stock', 'updated_at')
    inlines = [InventoryTransactionInline]

    def available_display(self, obj):
        return obj.available_stock
    available_display.short_description = "Available"

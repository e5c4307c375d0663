"""
Inventory Admin Configuration
==============================
Register inventory models with Django admin interface.
"""

from django.contrib import admin
from .models import (
    Principal, Product, InventoryRecord, StockMovement, StockReservation, UtilizationEntry
)


@admin.register(Principal)
class PrincipalAdmin(admin.ModelAdmin):
    list_display = ['principal_code', 'name', 'contact_person', 'email', 'is_active']
    list_filter = ['is_active']
    search_fields = ['principal_code', 'name', 'email']
    readonly_fields = ['id', 'created_at', 'updated_at']


@admin.register(Product)
class ProductAdmin(admin.ModelAdmin):
    list_display = ['product_code', 'name', 'principal', 'unit', 'minimum_stock', 'is_active']
    list_filter = ['principal', 'is_active']
    search_fields = ['product_code', 'name']
    readonly_fields = ['id', 'created_at', 'updated_at']


class StockMovementInline(admin.TabularInline):
    model = StockMovement
    extra = 0
    can_delete = False
    fields = ['sequence', 'movement_type', 'quantity', 'quantity_delta', 'reason', 'actor', 'moved_at']
    readonly_fields = fields

    def has_add_permission(self, request, obj=None):
        return False


class StockReservationInline(admin.TabularInline):
    model = StockReservation
    extra = 0
    can_delete = False
    fields = ['quantity', 'reserved_for', 'holder_reference', 'expires_at', 'is_released']
    readonly_fields = fields

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(InventoryRecord)
class InventoryRecordAdmin(admin.ModelAdmin):
    list_display = ['product', 'batch_no', 'warehouse', 'location_label', 'current_stock',
                    'reserved_stock', 'available_stock', 'exp_date', 'is_active']
    list_filter = ['warehouse', 'stock_status', 'is_active']
    search_fields = ['product__product_code', 'product__name', 'batch_no']
    readonly_fields = ['id', 'current_stock', 'reserved_stock', 'available_stock', 'total_value',
                       'purchase_order', 'invoice_receiving', 'quality_control', 'warehouse_approval',
                       'warehouse_product', 'transferred_from', 'created_at', 'updated_at']
    inlines = [StockMovementInline, StockReservationInline]

    fieldsets = (
        ('Batch', {
            'fields': ('product', 'batch_no', 'mfg_date', 'exp_date', 'stock_status')
        }),
        ('Location', {
            'fields': ('warehouse', 'zone', 'rack', 'shelf', 'bin', 'storage_conditions')
        }),
        ('Balances', {
            'fields': ('current_stock', 'reserved_stock', 'available_stock',
                       'minimum_stock', 'maximum_stock', 'unit_cost', 'total_value')
        }),
        ('Trace', {
            'fields': ('purchase_order', 'invoice_receiving', 'quality_control',
                       'warehouse_approval', 'warehouse_product', 'transferred_from')
        }),
        ('Audit', {
            'fields': ('id', 'is_active', 'created_at', 'updated_at'),
            'classes': ('collapse',)
        }),
    )

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(StockMovement)
class StockMovementAdmin(admin.ModelAdmin):
    list_display = ['inventory', 'sequence', 'movement_type', 'quantity', 'quantity_delta',
                    'reference_type', 'reference_number', 'moved_at']
    list_filter = ['movement_type', 'reference_type', 'moved_at']
    search_fields = ['inventory__batch_no', 'reference_number', 'reason']
    date_hierarchy = 'moved_at'

    def has_change_permission(self, request, obj=None):
        return False

    def has_delete_permission(self, request, obj=None):
        return False


@admin.register(UtilizationEntry)
class UtilizationEntryAdmin(admin.ModelAdmin):
    list_display = ['inventory', 'consumer_type', 'consumer_name', 'hospital_name', 'quantity', 'utilized_at']
    list_filter = ['consumer_type', 'utilized_at']
    search_fields = ['consumer_name', 'consumer_reference', 'hospital_name', 'patient_name', 'case_number']

    def has_change_permission(self, request, obj=None):
        return False

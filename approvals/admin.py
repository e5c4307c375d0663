"""
Warehouse Approval Admin Configuration
=======================================
Register warehouse approval models with Django admin interface.
"""

from django.contrib import admin
from .models import WarehouseApprovalRecord, WarehouseProduct, ManagerApproval


class WarehouseProductInline(admin.TabularInline):
    model = WarehouseProduct
    extra = 0
    can_delete = False
    fields = ['position', 'product', 'batch_no', 'qc_passed_qty', 'warehouse_qty', 'approved_qty',
              'decision', 'warehouse', 'zone', 'rack', 'shelf', 'bin']
    readonly_fields = ['position', 'product', 'batch_no', 'qc_passed_qty', 'warehouse_qty',
                       'approved_qty', 'decision']


class ManagerApprovalInline(admin.TabularInline):
    model = ManagerApproval
    extra = 0
    can_delete = False
    fields = ['level', 'action', 'actor', 'acted_at', 'remarks']
    readonly_fields = fields

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(WarehouseApprovalRecord)
class WarehouseApprovalRecordAdmin(admin.ModelAdmin):
    list_display = ['approval_number', 'quality_control', 'purchase_order', 'status',
                    'overall_result', 'final_approval_date']
    list_filter = ['status', 'overall_result', 'priority', 'inventory_integration_status']
    search_fields = ['approval_number', 'quality_control__qc_number', 'purchase_order__po_number']
    readonly_fields = ['id', 'approval_number', 'status', 'overall_result', 'final_approval_date',
                       'inventory_integration_status', 'created_at', 'updated_at']
    inlines = [WarehouseProductInline, ManagerApprovalInline]

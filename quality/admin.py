"""
Quality Control Admin Configuration
====================================
Register quality control models with Django admin interface.
"""

from django.contrib import admin
from .models import QualityControlRecord, QCProduct, QCItemDetail


class QCProductInline(admin.TabularInline):
    model = QCProduct
    extra = 0
    can_delete = False
    fields = ['position', 'product', 'batch_no', 'received_qty', 'passed_qty', 'failed_qty',
              'overall_status', 'qc_summary']
    readonly_fields = fields


@admin.register(QualityControlRecord)
class QualityControlRecordAdmin(admin.ModelAdmin):
    list_display = ['qc_number', 'invoice_receiving', 'purchase_order', 'status', 'overall_result',
                    'priority', 'assigned_to', 'qc_date']
    list_filter = ['status', 'overall_result', 'qc_type', 'priority']
    search_fields = ['qc_number', 'invoice_receiving__receiving_number', 'purchase_order__po_number']
    readonly_fields = ['id', 'qc_number', 'status', 'overall_result', 'approval_status',
                       'approved_by', 'approval_date', 'submitted_at', 'created_at', 'updated_at']
    inlines = [QCProductInline]


@admin.register(QCItemDetail)
class QCItemDetailAdmin(admin.ModelAdmin):
    list_display = ['product', 'item_number', 'status', 'inspected_by', 'inspected_at']
    list_filter = ['status']
    search_fields = ['product__qc__qc_number', 'product__batch_no']
    readonly_fields = ['product', 'item_number']

"""
Procurement Admin Configuration
================================
Register procurement models with Django admin interface.
"""

from django.contrib import admin
from .models import (
    PurchaseOrder, PurchaseOrderLine, WorkflowHistoryEntry,
    InvoiceReceiving, ReceivedLine
)


class PurchaseOrderLineInline(admin.TabularInline):
    model = PurchaseOrderLine
    extra = 0
    fields = ['product', 'ordered_qty', 'foc', 'unit_price', 'discount', 'discount_type',
              'total_cost', 'received_qty', 'backlog_qty']
    readonly_fields = ['total_cost', 'received_qty', 'backlog_qty']


class WorkflowHistoryInline(admin.TabularInline):
    model = WorkflowHistoryEntry
    extra = 0
    can_delete = False
    fields = ['sequence', 'action', 'from_stage', 'stage', 'actor', 'acted_at', 'remarks']
    readonly_fields = fields

    def has_add_permission(self, request, obj=None):
        return False


@admin.register(PurchaseOrder)
class PurchaseOrderAdmin(admin.ModelAdmin):
    list_display = ['po_number', 'principal', 'po_date', 'stage', 'status', 'grand_total']
    list_filter = ['status', 'stage', 'principal', 'po_date']
    search_fields = ['po_number', 'principal__name']
    readonly_fields = ['id', 'po_number', 'stage', 'status', 'sub_total', 'product_level_discount',
                       'cgst', 'sgst', 'igst', 'grand_total', 'submitted_at', 'approved_by',
                       'approved_at', 'ordered_at', 'closed_at', 'created_at', 'updated_at']
    date_hierarchy = 'po_date'
    inlines = [PurchaseOrderLineInline, WorkflowHistoryInline]

    fieldsets = (
        ('Basic Information', {
            'fields': ('po_number', 'po_date', 'principal', 'ship_to', 'requested_by')
        }),
        ('Notification', {
            'fields': ('to_emails', 'cc_emails')
        }),
        ('Financial', {
            'fields': ('sub_total', 'product_level_discount',
                       'additional_discount_type', 'additional_discount_value',
                       'tax_type', 'gst_rate', 'cgst', 'sgst', 'igst',
                       'shipping_charges_type', 'shipping_charges_value', 'grand_total')
        }),
        ('Terms', {
            'fields': ('terms', 'notes')
        }),
        ('Status & Approval', {
            'fields': ('stage', 'status', 'submitted_at', 'approved_by', 'approved_at',
                       'ordered_at', 'closed_at')
        }),
        ('Audit', {
            'fields': ('id', 'created_at', 'updated_at'),
            'classes': ('collapse',)
        }),
    )


class ReceivedLineInline(admin.TabularInline):
    model = ReceivedLine
    extra = 0
    fields = ['product', 'batch_no', 'mfg_date', 'exp_date', 'ordered_qty', 'received_qty',
              'unit_price', 'status', 'qc_status']
    readonly_fields = ['ordered_qty', 'qc_status']


@admin.register(InvoiceReceiving)
class InvoiceReceivingAdmin(admin.ModelAdmin):
    list_display = ['receiving_number', 'purchase_order', 'invoice_number', 'received_date',
                    'status', 'qc_status', 'invoice_amount']
    list_filter = ['status', 'qc_status', 'received_date']
    search_fields = ['receiving_number', 'invoice_number', 'purchase_order__po_number']
    readonly_fields = ['id', 'receiving_number', 'status', 'qc_status', 'invoice_amount_is_manual', 'submitted_at',
                       'created_at', 'updated_at']
    date_hierarchy = 'received_date'
    inlines = [ReceivedLineInline]

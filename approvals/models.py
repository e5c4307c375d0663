"""
Warehouse Approval Models
=========================
This module contains:
1. WarehouseApprovalRecord - Acceptance of QC-passed goods into stock
2. WarehouseProduct - Per-product warehouse decision and storage location
3. ManagerApproval - Append-only multi-level manager sign-off
"""

from django.conf import settings
from django.core.exceptions import ValidationError
from django.db import models
from django.db.models import Max
from django.utils import timezone

from core.models import BaseModel, Warehouse, next_document_number
from inventory.models import Product


DECISION_CHOICES = [
    ('pending', 'Pending'),
    ('approved', 'Approved'),
    ('rejected', 'Rejected'),
    ('partial_approved', 'Partially Approved'),
]


def reduce_decisions(decisions):
    """
    Combine product decisions into the record's overall result.

    pending while any product is undecided; approved / rejected when
    uniform; partial_approved when mixed or when any product is partial.
    """
    decisions = list(decisions)
    if not decisions or any(d == 'pending' for d in decisions):
        return 'pending'
    if all(d == 'approved' for d in decisions):
        return 'approved'
    if all(d == 'rejected' for d in decisions):
        return 'rejected'
    return 'partial_approved'


# ============================================================================
# WAREHOUSE APPROVAL RECORD
# ============================================================================

class WarehouseApprovalRecord(BaseModel):
    """
    Warehouse Approval - manager sign-off before QC-passed goods become stock.

    Lifecycle: pending -> in_progress -> pending_manager_approval -> completed | rejected
    """

    STATUS_CHOICES = [
        ('pending', 'Pending'),
        ('in_progress', 'In Progress'),
        ('pending_manager_approval', 'Pending Manager Approval'),
        ('completed', 'Completed'),
        ('rejected', 'Rejected'),
    ]

    RESULT_CHOICES = [
        ('pending', 'Pending'),
        ('approved', 'Approved'),
        ('rejected', 'Rejected'),
        ('partial_approved', 'Partially Approved'),
    ]

    PRIORITY_CHOICES = [
        ('low', 'Low'),
        ('medium', 'Medium'),
        ('high', 'High'),
        ('urgent', 'Urgent'),
    ]

    INTEGRATION_CHOICES = [
        ('pending', 'Pending'),
        ('completed', 'Completed'),
        ('not_required', 'Not Required'),
    ]

    approval_number = models.CharField(
        max_length=50,
        unique=True,
        editable=False,
        help_text="Auto-generated approval number (e.g., 'WA-202401-0001')"
    )
    quality_control = models.OneToOneField(
        'quality.QualityControlRecord',
        on_delete=models.PROTECT,
        related_name='warehouse_approval',
    )
    invoice_receiving = models.ForeignKey(
        'procurement.InvoiceReceiving',
        on_delete=models.PROTECT,
        related_name='warehouse_approvals',
    )
    purchase_order = models.ForeignKey(
        'procurement.PurchaseOrder',
        on_delete=models.PROTECT,
        related_name='warehouse_approvals',
    )
    warehouse = models.ForeignKey(
        Warehouse,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='warehouse_approvals',
        help_text="Default destination warehouse"
    )
    status = models.CharField(
        max_length=30,
        choices=STATUS_CHOICES,
        default='pending'
    )
    overall_result = models.CharField(
        max_length=20,
        choices=RESULT_CHOICES,
        default='pending'
    )
    priority = models.CharField(
        max_length=20,
        choices=PRIORITY_CHOICES,
        default='medium'
    )
    assigned_to = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='assigned_warehouse_approvals',
    )
    final_approval_date = models.DateTimeField(null=True, blank=True)
    inventory_integration_status = models.CharField(
        max_length=20,
        choices=INTEGRATION_CHOICES,
        default='pending'
    )
    environment = models.JSONField(
        default=dict,
        blank=True,
        help_text="Warehouse conditions at check time"
    )
    remarks = models.TextField(blank=True, default='')

    class Meta:
        db_table = 'warehouse_approvals'
        verbose_name = 'Warehouse Approval'
        verbose_name_plural = 'Warehouse Approvals'
        ordering = ['-created_at']
        indexes = [
            models.Index(fields=['status']),
            models.Index(fields=['purchase_order', 'status']),
        ]

    def __str__(self):
        return f"{self.approval_number} ({self.status})"

    def save(self, *args, **kwargs):
        if not self.approval_number:
            self.approval_number = next_document_number(
                WarehouseApprovalRecord, 'approval_number', f"WA-{timezone.now():%Y%m}-"
            )
        super().save(*args, **kwargs)

    def get_next_approval_level(self):
        """Level expected for the next manager action."""
        last = self.manager_approvals.filter(action='approve').aggregate(level=Max('level'))['level']
        return (last or 0) + 1

    @property
    def all_products_decided(self):
        return not self.products.filter(decision='pending').exists()


class WarehouseProduct(models.Model):
    """
    One QC-passed product awaiting a warehouse decision, addressed by ``position``.
    """

    REJECTION_REASONS = [
        ('storage_capacity', 'Storage Capacity'),
        ('damaged_packaging', 'Damaged Packaging'),
        ('temperature_requirements', 'Temperature Requirements'),
        ('expiry_concerns', 'Expiry Concerns'),
        ('documentation_issues', 'Documentation Issues'),
        ('quality_concerns', 'Quality Concerns'),
        ('other', 'Other'),
    ]

    id = models.BigAutoField(primary_key=True)
    approval = models.ForeignKey(
        WarehouseApprovalRecord,
        on_delete=models.CASCADE,
        related_name='products',
    )
    position = models.PositiveIntegerField()
    qc_product = models.ForeignKey(
        'quality.QCProduct',
        on_delete=models.PROTECT,
        related_name='warehouse_products',
    )
    product = models.ForeignKey(
        Product,
        on_delete=models.PROTECT,
        related_name='warehouse_products',
    )
    batch_no = models.CharField(max_length=50, blank=True, default='')
    mfg_date = models.DateField(null=True, blank=True)
    exp_date = models.DateField(null=True, blank=True)
    qc_passed_qty = models.PositiveIntegerField(
        help_text="Units that passed QC"
    )
    warehouse_qty = models.PositiveIntegerField(
        help_text="Units carried into the warehouse check"
    )
    approved_qty = models.PositiveIntegerField(
        null=True,
        blank=True,
        help_text="Units accepted into stock (set by the decision)"
    )
    rejected_qty = models.PositiveIntegerField(default=0)
    decision = models.CharField(
        max_length=20,
        choices=DECISION_CHOICES,
        default='pending'
    )

    # Storage
    warehouse = models.ForeignKey(
        Warehouse,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='approved_products',
    )
    zone = models.CharField(max_length=50, blank=True, default='')
    rack = models.CharField(max_length=50, blank=True, default='')
    shelf = models.CharField(max_length=50, blank=True, default='')
    bin = models.CharField(max_length=50, blank=True, default='')
    storage_conditions = models.JSONField(default=dict, blank=True)
    rejection_reasons = models.JSONField(default=list, blank=True)
    remarks = models.TextField(blank=True, default='')
    checked_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='warehouse_checks',
    )
    checked_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = 'warehouse_approval_products'
        verbose_name = 'Warehouse Product'
        verbose_name_plural = 'Warehouse Products'
        ordering = ['approval', 'position']
        constraints = [
            models.UniqueConstraint(fields=['approval', 'position'], name='warehouse_product_position_unique'),
        ]

    def __str__(self):
        return f"{self.product.product_code} batch {self.batch_no or '-'} ({self.decision})"

    def clean(self):
        if self.approved_qty is not None and self.approved_qty > self.qc_passed_qty:
            raise ValidationError({'approved_qty': "Approved quantity cannot exceed QC passed quantity."})


class ManagerApproval(models.Model):
    """
    One manager action on a warehouse approval. Never modified once written.
    """

    ACTION_CHOICES = [
        ('approve', 'Approve'),
        ('reject', 'Reject'),
    ]

    id = models.BigAutoField(primary_key=True)
    approval = models.ForeignKey(
        WarehouseApprovalRecord,
        on_delete=models.PROTECT,
        related_name='manager_approvals',
    )
    level = models.PositiveSmallIntegerField()
    action = models.CharField(max_length=10, choices=ACTION_CHOICES)
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='warehouse_manager_actions',
    )
    acted_at = models.DateTimeField(default=timezone.now)
    remarks = models.TextField(blank=True, default='')
    conditions = models.JSONField(default=list, blank=True)

    class Meta:
        db_table = 'warehouse_manager_approvals'
        verbose_name = 'Manager Approval'
        verbose_name_plural = 'Manager Approvals'
        ordering = ['approval', 'acted_at', 'id']

    def __str__(self):
        return f"L{self.level} {self.action} on {self.approval_id}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError("Manager approvals cannot be modified.")
        super().save(*args, **kwargs)

"""
Inventory Models
================
This module contains:
1. Principal - Supplier master reference
2. Product - Product master reference
3. InventoryRecord - Stock held per product/batch/warehouse location
4. StockMovement - Append-only stock ledger
5. StockReservation - Holds against available stock
6. UtilizationEntry - Consumption trace (hospital, doctor, patient)
7. Alert and valuation helpers
"""

from datetime import timedelta
from decimal import Decimal

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import F, Q, Sum
from django.utils import timezone

from core.conf import procurement_setting
from core.models import BaseModel, Warehouse


# ============================================================================
# PRINCIPAL (SUPPLIER)
# ============================================================================

class Principal(BaseModel):
    """
    Supplier master data.

    Purchase orders are raised against a principal. Maintained outside the
    pipeline and only read here.
    """
    principal_code = models.CharField(
        max_length=20,
        unique=True,
        help_text="Unique principal code"
    )
    name = models.CharField(
        max_length=200,
        help_text="Principal name"
    )
    contact_person = models.CharField(
        max_length=100,
        blank=True,
        default='',
        help_text="Contact person name"
    )
    email = models.EmailField(
        blank=True,
        default='',
        help_text="Order notification address"
    )
    phone = models.CharField(
        max_length=20,
        blank=True,
        default='',
        help_text="Phone number"
    )
    address = models.TextField(
        blank=True,
        default='',
        help_text="Address"
    )
    is_active = models.BooleanField(
        default=True,
        help_text="Whether principal is active"
    )

    class Meta:
        db_table = 'principals'
        verbose_name = 'Principal'
        verbose_name_plural = 'Principals'
        ordering = ['name']

    def __str__(self):
        return f"{self.principal_code} - {self.name}"


# ============================================================================
# PRODUCT
# ============================================================================

class Product(BaseModel):
    """
    Product master data with stock control parameters.
    """
    product_code = models.CharField(
        max_length=50,
        unique=True,
        help_text="Product code (unique identifier)"
    )
    name = models.CharField(
        max_length=200,
        help_text="Product name"
    )
    principal = models.ForeignKey(
        Principal,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='products',
        help_text="Principal supplying this product"
    )
    unit = models.CharField(
        max_length=20,
        default='PCS',
        help_text="Unit of measurement"
    )
    default_warehouse = models.ForeignKey(
        Warehouse,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name='default_products',
        help_text="Warehouse approved stock is placed in by default"
    )
    minimum_stock = models.PositiveIntegerField(
        default=0,
        help_text="Minimum stock before reorder alert"
    )
    maximum_stock = models.PositiveIntegerField(
        default=0,
        help_text="Maximum stock to hold (0 = unlimited)"
    )
    is_active = models.BooleanField(
        default=True,
        help_text="Whether product is active"
    )

    class Meta:
        db_table = 'products'
        verbose_name = 'Product'
        verbose_name_plural = 'Products'
        ordering = ['product_code']

    def __str__(self):
        return f"{self.product_code} - {self.name}"


# ============================================================================
# INVENTORY RECORD
# ============================================================================

class InventoryRecord(BaseModel):
    """
    Stock of one product batch at one warehouse location.

    Balances are derived from the ledgers:
    - current_stock = sum of movement deltas
    - reserved_stock = sum of unreleased reservations
    - available_stock = current_stock - reserved_stock

    Records are created when a warehouse approval completes (or by a
    cross-warehouse transfer) and are never hard-deleted.
    """

    STOCK_STATUS_CHOICES = [
        ('active', 'Active'),
        ('quarantine', 'Quarantine'),
        ('blocked', 'Blocked'),
    ]

    product = models.ForeignKey(
        Product,
        on_delete=models.PROTECT,
        related_name='inventory_records',
        help_text="Product"
    )
    batch_no = models.CharField(
        max_length=50,
        help_text="Batch / lot number"
    )
    mfg_date = models.DateField(
        null=True,
        blank=True,
        help_text="Manufacturing date"
    )
    exp_date = models.DateField(
        null=True,
        blank=True,
        help_text="Expiry date"
    )

    # Location
    warehouse = models.ForeignKey(
        Warehouse,
        on_delete=models.PROTECT,
        related_name='inventory_records',
        help_text="Warehouse holding the stock"
    )
    zone = models.CharField(max_length=50, blank=True, default='', help_text="Storage zone")
    rack = models.CharField(max_length=50, blank=True, default='', help_text="Rack")
    shelf = models.CharField(max_length=50, blank=True, default='', help_text="Shelf")
    bin = models.CharField(max_length=50, blank=True, default='', help_text="Bin")

    # Balances
    current_stock = models.PositiveIntegerField(
        default=0,
        help_text="Physical quantity on hand"
    )
    reserved_stock = models.PositiveIntegerField(
        default=0,
        help_text="Quantity held by active reservations"
    )
    available_stock = models.PositiveIntegerField(
        default=0,
        help_text="Quantity free to consume (calculated)"
    )
    minimum_stock = models.PositiveIntegerField(
        default=0,
        help_text="Reorder threshold"
    )
    maximum_stock = models.PositiveIntegerField(
        default=0,
        help_text="Maximum stock to hold (0 = unlimited)"
    )
    unit_cost = models.DecimalField(
        max_digits=15,
        decimal_places=2,
        default=Decimal('0'),
        validators=[MinValueValidator(0)],
        help_text="Cost per unit"
    )
    total_value = models.DecimalField(
        max_digits=18,
        decimal_places=2,
        default=Decimal('0'),
        help_text="Stock value (calculated)"
    )
    stock_status = models.CharField(
        max_length=20,
        choices=STOCK_STATUS_CHOICES,
        default='active',
        help_text="Stock status"
    )
    storage_conditions = models.JSONField(
        default=dict,
        blank=True,
        help_text="Temperature, humidity and handling requirements"
    )

    # Upstream trace
    purchase_order = models.ForeignKey(
        'procurement.PurchaseOrder',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='inventory_records',
        help_text="Originating purchase order"
    )
    invoice_receiving = models.ForeignKey(
        'procurement.InvoiceReceiving',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='inventory_records',
        help_text="Originating invoice receiving"
    )
    quality_control = models.ForeignKey(
        'quality.QualityControlRecord',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='inventory_records',
        help_text="Originating QC record"
    )
    warehouse_approval = models.ForeignKey(
        'approvals.WarehouseApprovalRecord',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='inventory_records',
        help_text="Warehouse approval that released the stock"
    )
    warehouse_product = models.ForeignKey(
        'approvals.WarehouseProduct',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='inventory_records',
        help_text="Approved product line"
    )
    transferred_from = models.ForeignKey(
        'self',
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='transfers_out',
        help_text="Source record when created by a transfer"
    )

    is_active = models.BooleanField(
        default=True,
        help_text="False once deactivated"
    )

    class Meta:
        db_table = 'inventory_records'
        verbose_name = 'Inventory Record'
        verbose_name_plural = 'Inventory Records'
        ordering = ['product', 'exp_date', 'batch_no']
        indexes = [
            models.Index(fields=['product', 'batch_no']),
            models.Index(fields=['warehouse', 'is_active']),
            models.Index(fields=['exp_date']),
        ]
        constraints = [
            models.CheckConstraint(
                condition=Q(reserved_stock__lte=F('current_stock')),
                name='inventory_reserved_within_current',
            ),
            models.CheckConstraint(
                condition=Q(available_stock=F('current_stock') - F('reserved_stock')),
                name='inventory_available_is_current_minus_reserved',
            ),
        ]

    def __str__(self):
        return f"{self.product.product_code} - Batch {self.batch_no} @ {self.warehouse.code}"

    def save(self, *args, **kwargs):
        """Calculate available quantity and total value."""
        if self.reserved_stock > self.current_stock:
            raise ValidationError("Reserved stock cannot exceed current stock.")
        self.available_stock = self.current_stock - self.reserved_stock
        self.total_value = self.current_stock * self.unit_cost
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError("Inventory records are never deleted; deactivate them instead.")

    def deactivate(self, user_id=None):
        """Soft-deactivate the record (stock history is kept)."""
        self.is_active = False
        self.save(update_fields=['is_active', 'updated_at'])
        self.soft_delete(user_id)

    # ------------------------------------------------------------------
    # Location
    # ------------------------------------------------------------------

    @property
    def location(self):
        return {'zone': self.zone, 'rack': self.rack, 'shelf': self.shelf, 'bin': self.bin}

    @property
    def location_label(self):
        parts = [p for p in (self.zone, self.rack, self.shelf, self.bin) if p]
        return '-'.join(parts) or 'UNASSIGNED'

    # ------------------------------------------------------------------
    # Alerts
    # ------------------------------------------------------------------

    @property
    def needs_reorder(self):
        return self.available_stock <= self.minimum_stock

    def days_until_expiry(self, today=None):
        if not self.exp_date:
            return None
        today = today or timezone.localdate()
        return (self.exp_date - today).days

    def expiry_status(self, today=None):
        """
        Classify the batch by expiry date.

        Returns 'expired', 'near_expiry' (within NEAR_EXPIRY_DAYS),
        'good', or 'no_expiry' when the batch has no expiry date.
        """
        days = self.days_until_expiry(today)
        if days is None:
            return 'no_expiry'
        if days < 0:
            return 'expired'
        if days <= procurement_setting('NEAR_EXPIRY_DAYS'):
            return 'near_expiry'
        return 'good'

    # ------------------------------------------------------------------
    # Traceability
    # ------------------------------------------------------------------

    def get_product_journey(self):
        """
        Full upstream-to-downstream trace of this batch.

        Returns a dict with the purchase order, invoice, QC and warehouse
        approval the stock came from, the transfer origin (if any), every
        stock movement and every utilization event.
        """
        origin = self
        while origin.transferred_from_id and origin.purchase_order_id is None:
            origin = origin.transferred_from

        po = origin.purchase_order
        receiving = origin.invoice_receiving
        qc = origin.quality_control
        approval = origin.warehouse_approval

        return {
            'inventory_id': str(self.id),
            'product_code': self.product.product_code,
            'batch_no': self.batch_no,
            'warehouse': self.warehouse.code,
            'location': self.location_label,
            'purchase_order': po and {
                'id': str(po.id),
                'po_number': po.po_number,
                'po_date': po.po_date,
                'principal': po.principal.name,
                'status': po.status,
            },
            'invoice_receiving': receiving and {
                'id': str(receiving.id),
                'receiving_number': receiving.receiving_number,
                'invoice_number': receiving.invoice_number,
                'invoice_date': receiving.invoice_date,
                'received_date': receiving.received_date,
            },
            'quality_control': qc and {
                'id': str(qc.id),
                'qc_number': qc.qc_number,
                'overall_result': qc.overall_result,
                'approval_date': qc.approval_date,
            },
            'warehouse_approval': approval and {
                'id': str(approval.id),
                'approval_number': approval.approval_number,
                'overall_result': approval.overall_result,
                'final_approval_date': approval.final_approval_date,
            },
            'transferred_from': self.transferred_from_id and str(self.transferred_from_id),
            'movements': [
                {
                    'type': m.movement_type,
                    'quantity': m.quantity,
                    'delta': m.quantity_delta,
                    'reason': m.reason,
                    'moved_at': m.moved_at,
                    'reference_type': m.reference_type,
                    'reference_number': m.reference_number,
                }
                for m in self.movements.order_by('moved_at', 'sequence')
            ],
            'utilization': [
                {
                    'consumer_type': u.consumer_type,
                    'consumer_reference': u.consumer_reference,
                    'consumer_name': u.consumer_name,
                    'hospital_name': u.hospital_name,
                    'doctor_name': u.doctor_name,
                    'patient_name': u.patient_name,
                    'case_number': u.case_number,
                    'quantity': u.quantity,
                    'utilized_at': u.utilized_at,
                }
                for u in self.utilizations.order_by('utilized_at')
            ],
        }


# ============================================================================
# STOCK MOVEMENT
# ============================================================================

class StockMovement(models.Model):
    """
    Stock movement ledger - records every change to an inventory record.

    This is the single source of truth for current_stock: the balance always
    equals the sum of quantity_delta over the record's movements. Rows are
    never updated or deleted.
    """

    MOVEMENT_TYPES = [
        ('inward', 'Inward'),
        ('outward', 'Outward'),
        ('transfer', 'Transfer'),
        ('adjustment', 'Adjustment'),
    ]

    REFERENCE_TYPES = [
        ('warehouse_approval', 'Warehouse Approval'),
        ('transfer_order', 'Transfer Order'),
        ('adjustment_note', 'Adjustment Note'),
        ('hospital_requisition', 'Hospital Requisition'),
        ('reservation', 'Reservation'),
    ]

    id = models.BigAutoField(primary_key=True)
    inventory = models.ForeignKey(
        InventoryRecord,
        on_delete=models.PROTECT,
        related_name='movements',
        help_text="Inventory record"
    )
    sequence = models.PositiveIntegerField(
        help_text="Position in the record's ledger"
    )
    movement_type = models.CharField(
        max_length=20,
        choices=MOVEMENT_TYPES,
        help_text="Movement type"
    )
    quantity = models.PositiveIntegerField(
        validators=[MinValueValidator(1)],
        help_text="Quantity moved"
    )
    quantity_delta = models.IntegerField(
        help_text="Signed effect on current stock"
    )
    reason = models.CharField(
        max_length=200,
        blank=True,
        default='',
        help_text="Reason for movement"
    )
    remarks = models.TextField(
        blank=True,
        default='',
        help_text="Remarks"
    )
    actor = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='stock_movements',
        help_text="User who moved the stock"
    )
    moved_at = models.DateTimeField(
        default=timezone.now,
        help_text="Movement timestamp"
    )

    # Source / destination
    from_warehouse = models.ForeignKey(
        Warehouse,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='movements_out',
        help_text="Source warehouse"
    )
    from_location = models.CharField(max_length=200, blank=True, default='', help_text="Source location")
    to_warehouse = models.ForeignKey(
        Warehouse,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='movements_in',
        help_text="Destination warehouse"
    )
    to_location = models.CharField(max_length=200, blank=True, default='', help_text="Destination location")

    # Reference document
    reference_type = models.CharField(
        max_length=30,
        choices=REFERENCE_TYPES,
        blank=True,
        default='',
        help_text="Type of source document"
    )
    reference_id = models.UUIDField(
        null=True,
        blank=True,
        help_text="Source document ID"
    )
    reference_number = models.CharField(
        max_length=100,
        blank=True,
        default='',
        help_text="Source document number"
    )

    class Meta:
        db_table = 'stock_movements'
        verbose_name = 'Stock Movement'
        verbose_name_plural = 'Stock Movements'
        ordering = ['inventory', 'sequence']
        constraints = [
            models.UniqueConstraint(fields=['inventory', 'sequence'], name='stock_movement_sequence_unique'),
        ]
        indexes = [
            models.Index(fields=['movement_type', 'moved_at']),
            models.Index(fields=['reference_type', 'reference_id']),
        ]

    def __str__(self):
        return f"{self.movement_type} {self.quantity_delta:+d} on {self.inventory_id}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError("Stock movements are append-only.")
        super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError("Stock movements are append-only.")


# ============================================================================
# STOCK RESERVATION
# ============================================================================

class StockReservation(BaseModel):
    """
    Hold on available stock for a pending downstream consumer.

    The only mutation a reservation ever sees is its release.
    """

    RESERVED_FOR_CHOICES = [
        ('hospital_order', 'Hospital Order'),
        ('transfer_order', 'Transfer Order'),
        ('maintenance', 'Maintenance'),
        ('quality_check', 'Quality Check'),
    ]

    inventory = models.ForeignKey(
        InventoryRecord,
        on_delete=models.PROTECT,
        related_name='reservations',
        help_text="Inventory record"
    )
    quantity = models.PositiveIntegerField(
        validators=[MinValueValidator(1)],
        help_text="Reserved quantity"
    )
    reserved_for = models.CharField(
        max_length=30,
        choices=RESERVED_FOR_CHOICES,
        default='hospital_order',
        help_text="Purpose of the reservation"
    )
    holder_reference = models.CharField(
        max_length=100,
        blank=True,
        default='',
        help_text="Order or document holding the stock"
    )
    reserved_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='stock_reservations',
        help_text="User who reserved"
    )
    reserved_at = models.DateTimeField(
        default=timezone.now,
        help_text="Reservation timestamp"
    )
    expires_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Reservation lapses after this time"
    )
    is_released = models.BooleanField(
        default=False,
        help_text="Whether the quantity went back to available"
    )
    released_at = models.DateTimeField(null=True, blank=True)
    released_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='released_reservations',
    )
    release_reason = models.CharField(max_length=200, blank=True, default='')

    class Meta:
        db_table = 'stock_reservations'
        verbose_name = 'Stock Reservation'
        verbose_name_plural = 'Stock Reservations'
        ordering = ['reserved_at']
        indexes = [
            models.Index(fields=['is_released', 'expires_at']),
        ]

    def __str__(self):
        state = 'released' if self.is_released else 'active'
        return f"{self.quantity} of {self.inventory_id} for {self.holder_reference or self.reserved_for} ({state})"

    def is_expired(self, now=None):
        now = now or timezone.now()
        return self.expires_at is not None and self.expires_at <= now


# ============================================================================
# UTILIZATION
# ============================================================================

class UtilizationEntry(models.Model):
    """
    Consumption of stock by a downstream consumer (hospital, doctor, patient case).
    """

    CONSUMER_TYPES = [
        ('hospital', 'Hospital'),
        ('doctor', 'Doctor'),
        ('patient', 'Patient'),
        ('internal', 'Internal'),
    ]

    id = models.BigAutoField(primary_key=True)
    inventory = models.ForeignKey(
        InventoryRecord,
        on_delete=models.PROTECT,
        related_name='utilizations',
        help_text="Inventory record consumed from"
    )
    movement = models.OneToOneField(
        StockMovement,
        on_delete=models.PROTECT,
        related_name='utilization',
        help_text="Outward movement recording the consumption"
    )
    consumer_type = models.CharField(
        max_length=20,
        choices=CONSUMER_TYPES,
        default='hospital',
        help_text="Kind of consumer"
    )
    consumer_reference = models.CharField(max_length=100, blank=True, default='')
    consumer_name = models.CharField(max_length=200, blank=True, default='')
    hospital_name = models.CharField(max_length=200, blank=True, default='')
    doctor_name = models.CharField(max_length=200, blank=True, default='')
    patient_name = models.CharField(max_length=200, blank=True, default='')
    patient_reference = models.CharField(max_length=100, blank=True, default='')
    case_number = models.CharField(max_length=100, blank=True, default='')
    quantity = models.PositiveIntegerField(
        validators=[MinValueValidator(1)],
        help_text="Quantity consumed"
    )
    reason = models.CharField(max_length=200, blank=True, default='')
    remarks = models.TextField(blank=True, default='')
    utilized_by = models.ForeignKey(
        settings.AUTH_USER_MODEL,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name='stock_utilizations',
    )
    utilized_at = models.DateTimeField(default=timezone.now)

    class Meta:
        db_table = 'utilization_entries'
        verbose_name = 'Utilization Entry'
        verbose_name_plural = 'Utilization Entries'
        ordering = ['utilized_at']

    def __str__(self):
        return f"{self.quantity} used by {self.consumer_name or self.consumer_reference}"

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError("Utilization entries are append-only.")
        super().save(*args, **kwargs)


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def get_inventory_alerts(warehouse=None, today=None):
    """
    Stock alerts computed on demand.

    Args:
        warehouse: Warehouse instance or id (optional)
        today: Reference date (defaults to today)

    Returns:
        dict: {low_stock, out_of_stock, near_expiry, expired} lists of records
    """
    today = today or timezone.localdate()
    records = InventoryRecord.objects.filter(is_active=True).select_related('product', 'warehouse')
    if warehouse:
        records = records.filter(warehouse=warehouse)

    near_expiry_limit = today + timedelta(days=procurement_setting('NEAR_EXPIRY_DAYS'))

    return {
        'low_stock': list(records.filter(
            available_stock__gt=0,
            available_stock__lte=F('minimum_stock')
        )),
        'out_of_stock': list(records.filter(available_stock=0)),
        'near_expiry': list(records.filter(
            exp_date__isnull=False,
            exp_date__gte=today,
            exp_date__lte=near_expiry_limit,
            current_stock__gt=0
        ).order_by('exp_date')),
        'expired': list(records.filter(
            exp_date__isnull=False,
            exp_date__lt=today,
            current_stock__gt=0
        ).order_by('exp_date')),
    }


def get_inventory_valuation(warehouse=None):
    """
    Aggregate stock value.

    Returns:
        dict: {records, quantity, value, avg_cost}
    """
    records = InventoryRecord.objects.filter(is_active=True)
    if warehouse:
        records = records.filter(warehouse=warehouse)

    totals = records.aggregate(quantity=Sum('current_stock'), value=Sum('total_value'))
    quantity = totals['quantity'] or 0
    value = totals['value'] or Decimal('0')
    avg_cost = (value / quantity).quantize(Decimal('0.01')) if quantity else Decimal('0')

    return {
        'records': records.count(),
        'quantity': quantity,
        'value': value,
        'avg_cost': avg_cost,
    }

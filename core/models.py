"""
Core Models - Base Classes and Shared Masters
==============================================
This module contains:
1. BaseModel - Abstract base class for all pipeline models
2. Warehouse - Storage facility that receives approved stock
3. next_document_number - Sequential document numbering helper
"""

import uuid
from django.core.exceptions import ValidationError
from django.db import models, transaction
from django.utils import timezone

from .exceptions import NotFound


# ============================================================================
# ABSTRACT BASE MODEL
# ============================================================================

class BaseModel(models.Model):
    """
    Abstract base model that provides common fields for all models.

    Fields:
    - UUID as primary key
    - created_at, updated_at (automatic timestamps)
    - created_by, updated_by (user tracking)
    - deleted_at, deleted_by (soft delete support)

    Usage:
        class MyModel(BaseModel):
            # Your fields here
            pass
    """
    id = models.UUIDField(
        primary_key=True,
        default=uuid.uuid4,
        editable=False,
        help_text="Unique identifier (UUID)"
    )

    # Timestamps
    created_at = models.DateTimeField(
        auto_now_add=True,
        help_text="Timestamp when record was created"
    )
    updated_at = models.DateTimeField(
        auto_now=True,
        help_text="Timestamp when record was last updated"
    )

    # User tracking (nullable for system-created records)
    created_by = models.UUIDField(
        null=True,
        blank=True,
        help_text="User who created this record"
    )
    updated_by = models.UUIDField(
        null=True,
        blank=True,
        help_text="User who last updated this record"
    )

    # Soft delete fields
    deleted_at = models.DateTimeField(
        null=True,
        blank=True,
        help_text="Timestamp when record was soft-deleted"
    )
    deleted_by = models.UUIDField(
        null=True,
        blank=True,
        help_text="User who deleted this record"
    )

    class Meta:
        abstract = True
        ordering = ['-created_at']

    def soft_delete(self, user_id=None):
        """
        Soft delete the record (marks as deleted without removing from DB).

        Args:
            user_id: UUID of user performing the deletion
        """
        self.deleted_at = timezone.now()
        self.deleted_by = user_id
        self.save(update_fields=['deleted_at', 'deleted_by'])

    def restore(self):
        """Restore a soft-deleted record."""
        self.deleted_at = None
        self.deleted_by = None
        self.save(update_fields=['deleted_at', 'deleted_by'])

    @property
    def is_deleted(self):
        """Check if record is soft-deleted."""
        return self.deleted_at is not None

    @classmethod
    def get_for_update(cls, obj_or_pk):
        """
        Re-read a row under a row lock.

        Must be called inside ``transaction.atomic()``. Accepts an instance or
        a primary key and raises ``NotFound`` when the row does not exist.
        """
        pk = getattr(obj_or_pk, 'pk', obj_or_pk)
        try:
            return cls.objects.select_for_update().get(pk=pk)
        except (cls.DoesNotExist, ValueError, ValidationError):
            raise NotFound(
                f"{cls._meta.verbose_name} not found",
                model=cls.__name__,
                id=pk,
            )


# ============================================================================
# WAREHOUSE
# ============================================================================

class Warehouse(BaseModel):
    """
    Physical storage facility.

    Master data maintained outside the pipeline; approved stock is placed
    into a warehouse and may be transferred between warehouses.
    """
    code = models.CharField(
        max_length=20,
        unique=True,
        help_text="Unique warehouse code (e.g., 'WH-MAIN')"
    )
    name = models.CharField(
        max_length=200,
        help_text="Warehouse name"
    )
    address = models.TextField(
        blank=True,
        default='',
        help_text="Warehouse address"
    )
    is_default = models.BooleanField(
        default=False,
        help_text="Used when a product has no destination warehouse"
    )
    is_active = models.BooleanField(
        default=True,
        help_text="Whether warehouse accepts stock"
    )

    class Meta:
        db_table = 'warehouses'
        verbose_name = 'Warehouse'
        verbose_name_plural = 'Warehouses'
        ordering = ['code']

    def __str__(self):
        return f"{self.code} - {self.name}"

    @classmethod
    def get_default(cls):
        warehouse = cls.objects.filter(
            is_active=True,
            deleted_at__isnull=True
        ).order_by('-is_default', 'code').first()
        if warehouse is None:
            raise NotFound("No active warehouse available", model='Warehouse')
        return warehouse


# ============================================================================
# HELPER FUNCTIONS
# ============================================================================

def next_document_number(model, field, prefix):
    """
    Return the next sequential document number for ``prefix``.

    Numbers look like ``<prefix><nnnn>``, e.g. ``PO-2024-0007`` for the
    prefix ``PO-2024-``. The sequence continues from the highest numeric
    suffix, so ``-9999`` is followed by ``-10000``. Inside a transaction the
    existing numbers are locked until commit.
    """
    numbers = model.objects.filter(**{f'{field}__startswith': prefix})
    if transaction.get_connection().in_atomic_block:
        numbers = numbers.select_for_update()

    suffixes = [
        int(suffix) for suffix in (
            value[len(prefix):] for value in numbers.values_list(field, flat=True)
        ) if suffix.isdigit()
    ]
    new_num = max(suffixes, default=0) + 1

    return f'{prefix}{new_num:04d}'

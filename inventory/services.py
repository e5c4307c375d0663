"""
Stock Ledger Services
=====================
Every operation locks the inventory record, appends to its ledger and
saves the derived balances in one transaction.

This module contains:
1. add_stock / remove_stock / adjust_stock
2. reserve_stock / release_reservation / release_expired_reservations
3. transfer_stock
4. record_utilization
5. receive_into_stock - inventory creation from an approved warehouse line
6. rebuild_balances / verify_ledger - ledger projection and repair
"""

import logging

from django.db import transaction
from django.db.models import Max, Sum
from django.utils import timezone

from core.exceptions import InsufficientStock, InvalidInput, InvalidQuantity, NotFound
from core.models import Warehouse
from .models import InventoryRecord, StockMovement, StockReservation, UtilizationEntry

logger = logging.getLogger(__name__)

LOCATION_FIELDS = ('zone', 'rack', 'shelf', 'bin')


# ============================================================================
# INTERNAL HELPERS
# ============================================================================

def _check_quantity(quantity, field='quantity'):
    if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity <= 0:
        raise InvalidQuantity(f"{field} must be a positive whole number", **{field: quantity})
    return quantity


def _check_available(inventory, quantity):
    if quantity > inventory.available_stock:
        raise InsufficientStock(
            f"Requested {quantity} exceeds available stock {inventory.available_stock}",
            inventory_id=inventory.id,
            requested=quantity,
            available=inventory.available_stock,
        )


def _append_movement(inventory, movement_type, quantity, delta, actor=None, **fields):
    """Append a ledger row and apply its delta to the locked record."""
    last_sequence = inventory.movements.aggregate(last=Max('sequence'))['last'] or 0
    movement = StockMovement.objects.create(
        inventory=inventory,
        sequence=last_sequence + 1,
        movement_type=movement_type,
        quantity=quantity,
        quantity_delta=delta,
        actor=actor,
        **fields
    )
    inventory.current_stock += delta
    inventory.save()
    return movement


def _location_kwargs(location):
    location = location or {}
    unknown = set(location) - set(LOCATION_FIELDS)
    if unknown:
        raise InvalidInput("Unknown location fields", fields=sorted(unknown))
    return {key: location.get(key, '') or '' for key in LOCATION_FIELDS}


# ============================================================================
# BASIC MOVEMENTS
# ============================================================================

def add_stock(inventory, quantity, actor=None, reason='', remarks='', **reference):
    """Increase current and available stock by ``quantity`` (inward movement)."""
    _check_quantity(quantity)
    with transaction.atomic():
        inventory = InventoryRecord.get_for_update(inventory)
        movement = _append_movement(
            inventory, 'inward', quantity, quantity, actor,
            reason=reason,
            remarks=remarks,
            to_warehouse=inventory.warehouse,
            to_location=inventory.location_label,
            **reference
        )
    logger.info("Added %s to inventory %s (current=%s)", quantity, inventory.id, inventory.current_stock)
    return movement


def remove_stock(inventory, quantity, actor=None, reason='', remarks='', **reference):
    """
    Decrease current and available stock (outward movement).

    Raises:
        InsufficientStock: quantity is more than the available balance
    """
    _check_quantity(quantity)
    with transaction.atomic():
        inventory = InventoryRecord.get_for_update(inventory)
        _check_available(inventory, quantity)
        movement = _append_movement(
            inventory, 'outward', quantity, -quantity, actor,
            reason=reason,
            remarks=remarks,
            from_warehouse=inventory.warehouse,
            from_location=inventory.location_label,
            **reference
        )
    logger.info("Removed %s from inventory %s (current=%s)", quantity, inventory.id, inventory.current_stock)
    return movement


def adjust_stock(inventory, delta, actor=None, reason='', remarks=''):
    """
    Cycle-count correction. ``delta`` is signed; a decrease may not exceed
    the available balance.
    """
    if isinstance(delta, bool) or not isinstance(delta, int) or delta == 0:
        raise InvalidQuantity("Adjustment must be a non-zero whole number", delta=delta)
    if not reason:
        raise InvalidInput("Adjustment reason is required")

    with transaction.atomic():
        inventory = InventoryRecord.get_for_update(inventory)
        if delta < 0:
            _check_available(inventory, -delta)
        movement = _append_movement(
            inventory, 'adjustment', abs(delta), delta, actor,
            reason=reason,
            remarks=remarks,
            reference_type='adjustment_note',
        )
    logger.info("Adjusted inventory %s by %+d (%s)", inventory.id, delta, reason)
    return movement


# ============================================================================
# RESERVATIONS
# ============================================================================

def reserve_stock(inventory, quantity, actor=None, holder_reference='', reserved_for='hospital_order',
                  expires_at=None):
    """
    Move ``quantity`` from available to reserved.

    Raises:
        InsufficientStock: quantity is more than the available balance
    """
    _check_quantity(quantity)
    if reserved_for not in dict(StockReservation.RESERVED_FOR_CHOICES):
        raise InvalidInput("Unknown reservation purpose", reserved_for=reserved_for)

    with transaction.atomic():
        inventory = InventoryRecord.get_for_update(inventory)
        _check_available(inventory, quantity)
        reservation = StockReservation.objects.create(
            inventory=inventory,
            quantity=quantity,
            reserved_for=reserved_for,
            holder_reference=holder_reference,
            reserved_by=actor,
            expires_at=expires_at,
        )
        inventory.reserved_stock += quantity
        inventory.save()

    logger.info("Reserved %s of inventory %s for %s", quantity, inventory.id, holder_reference or reserved_for)
    return reservation


def release_reservation(reservation, actor=None, reason=''):
    """
    Return a reservation's quantity to available stock.

    Releasing an already released reservation is a no-op.
    """
    reservation_id = getattr(reservation, 'pk', reservation)
    inventory_id = StockReservation.objects.filter(pk=reservation_id).values_list('inventory_id', flat=True).first()
    if inventory_id is None:
        raise NotFound("Reservation not found", model='StockReservation', id=reservation_id)

    with transaction.atomic():
        inventory = InventoryRecord.get_for_update(inventory_id)
        reservation = StockReservation.get_for_update(reservation_id)
        if reservation.is_released:
            return reservation

        reservation.is_released = True
        reservation.released_at = timezone.now()
        reservation.released_by = actor
        reservation.release_reason = reason
        reservation.save(update_fields=['is_released', 'released_at', 'released_by', 'release_reason', 'updated_at'])

        inventory.reserved_stock -= reservation.quantity
        inventory.save()

    logger.info("Released reservation %s (%s units)", reservation.id, reservation.quantity)
    return reservation


def release_expired_reservations(now=None, actor=None):
    """Release every active reservation whose expiry has passed. Returns the count."""
    now = now or timezone.now()
    expired_ids = list(StockReservation.objects.filter(
        is_released=False,
        expires_at__isnull=False,
        expires_at__lte=now
    ).values_list('id', flat=True))

    for reservation_id in expired_ids:
        release_reservation(reservation_id, actor=actor, reason='expired')

    if expired_ids:
        logger.info("Released %s expired reservations", len(expired_ids))
    return len(expired_ids)


# ============================================================================
# TRANSFER
# ============================================================================

def transfer_stock(inventory, quantity, to_warehouse, actor=None, to_location=None, reason='', remarks=''):
    """
    Move stock to another warehouse or location.

    Different warehouse: the source loses ``quantity`` and a new record is
    created at the destination with the same batch, expiry, cost and trace.
    Same warehouse: the record is relocated in place; only the location
    fields given in ``to_location`` change.

    Returns:
        InventoryRecord: the record now holding the transferred stock
    """
    _check_quantity(quantity)
    location = _location_kwargs(to_location)
    destination_warehouse = Warehouse.objects.filter(pk=getattr(to_warehouse, 'pk', to_warehouse)).first()
    if destination_warehouse is None:
        raise NotFound("Destination warehouse not found", model='Warehouse', id=to_warehouse)

    with transaction.atomic():
        source = InventoryRecord.get_for_update(inventory)
        _check_available(source, quantity)
        from_label = source.location_label

        if destination_warehouse.pk == source.warehouse_id:
            if not to_location:
                raise InvalidInput(
                    "A transfer within the same warehouse needs a destination location",
                    warehouse=destination_warehouse.code,
                )
            for key in to_location:
                setattr(source, key, location[key])
            _append_movement(
                source, 'transfer', quantity, 0, actor,
                reason=reason or 'Location change',
                remarks=remarks,
                from_warehouse=source.warehouse,
                from_location=from_label,
                to_warehouse=source.warehouse,
                to_location=source.location_label,
                reference_type='transfer_order',
            )
            logger.info("Relocated inventory %s from %s to %s", source.id, from_label, source.location_label)
            return source

        destination = InventoryRecord.objects.create(
            product=source.product,
            batch_no=source.batch_no,
            mfg_date=source.mfg_date,
            exp_date=source.exp_date,
            warehouse=destination_warehouse,
            minimum_stock=source.minimum_stock,
            maximum_stock=source.maximum_stock,
            unit_cost=source.unit_cost,
            storage_conditions=source.storage_conditions,
            purchase_order=source.purchase_order,
            invoice_receiving=source.invoice_receiving,
            quality_control=source.quality_control,
            warehouse_approval=source.warehouse_approval,
            warehouse_product=source.warehouse_product,
            transferred_from=source,
            **location
        )
        _append_movement(
            source, 'transfer', quantity, -quantity, actor,
            reason=reason or 'Warehouse transfer',
            remarks=remarks,
            from_warehouse=source.warehouse,
            from_location=from_label,
            to_warehouse=destination_warehouse,
            to_location=destination.location_label,
            reference_type='transfer_order',
            reference_id=destination.id,
        )
        _append_movement(
            destination, 'inward', quantity, quantity, actor,
            reason=reason or 'Warehouse transfer',
            remarks=remarks,
            from_warehouse=source.warehouse,
            from_location=from_label,
            to_warehouse=destination_warehouse,
            to_location=destination.location_label,
            reference_type='transfer_order',
            reference_id=source.id,
        )

    logger.info(
        "Transferred %s of batch %s from %s to %s",
        quantity, source.batch_no, source.warehouse.code, destination_warehouse.code
    )
    return destination


# ============================================================================
# UTILIZATION
# ============================================================================

def record_utilization(inventory, quantity, actor=None, consumer_type='hospital', consumer_reference='',
                       consumer_name='', reason='', remarks='', **consumer):
    """
    Consume stock on behalf of a downstream consumer.

    Extra keyword arguments fill the structured consumer fields
    (hospital_name, doctor_name, patient_name, patient_reference, case_number).
    """
    _check_quantity(quantity)
    allowed = {'hospital_name', 'doctor_name', 'patient_name', 'patient_reference', 'case_number'}
    unknown = set(consumer) - allowed
    if unknown:
        raise InvalidInput("Unknown consumer fields", fields=sorted(unknown))
    if consumer_type not in dict(UtilizationEntry.CONSUMER_TYPES):
        raise InvalidInput("Unknown consumer type", consumer_type=consumer_type)
    max_reference = UtilizationEntry._meta.get_field('consumer_reference').max_length
    if len(consumer_reference) > max_reference:
        raise InvalidInput(
            f"Consumer reference cannot exceed {max_reference} characters",
            consumer_reference=consumer_reference,
        )

    with transaction.atomic():
        inventory = InventoryRecord.get_for_update(inventory)
        _check_available(inventory, quantity)
        movement = _append_movement(
            inventory, 'outward', quantity, -quantity, actor,
            reason=reason or 'Utilization',
            remarks=remarks,
            from_warehouse=inventory.warehouse,
            from_location=inventory.location_label,
            reference_type='hospital_requisition',
            reference_number=consumer_reference,
        )
        entry = UtilizationEntry.objects.create(
            inventory=inventory,
            movement=movement,
            consumer_type=consumer_type,
            consumer_reference=consumer_reference,
            consumer_name=consumer_name,
            quantity=quantity,
            reason=reason,
            remarks=remarks,
            utilized_by=actor,
            **consumer
        )

    logger.info("Utilized %s of inventory %s for %s", quantity, inventory.id, consumer_name or consumer_reference)
    return entry


# ============================================================================
# INVENTORY CREATION
# ============================================================================

def receive_into_stock(warehouse_product, actor=None):
    """
    Create the inventory record for an approved warehouse product line.

    Runs inside the caller's transaction. The new record carries the
    purchase order, invoice, QC and warehouse approval it came from.
    """
    approval = warehouse_product.approval
    qc_product = warehouse_product.qc_product
    received_line = qc_product.received_line
    warehouse = (
        warehouse_product.warehouse
        or approval.warehouse
        or warehouse_product.product.default_warehouse
        or Warehouse.get_default()
    )

    inventory = InventoryRecord.objects.create(
        product=warehouse_product.product,
        batch_no=warehouse_product.batch_no,
        mfg_date=warehouse_product.mfg_date,
        exp_date=warehouse_product.exp_date,
        warehouse=warehouse,
        zone=warehouse_product.zone,
        rack=warehouse_product.rack,
        shelf=warehouse_product.shelf,
        bin=warehouse_product.bin,
        minimum_stock=warehouse_product.product.minimum_stock,
        maximum_stock=warehouse_product.product.maximum_stock,
        unit_cost=received_line.unit_price if received_line else 0,
        storage_conditions=warehouse_product.storage_conditions or {},
        purchase_order=approval.purchase_order,
        invoice_receiving=approval.invoice_receiving,
        quality_control=approval.quality_control,
        warehouse_approval=approval,
        warehouse_product=warehouse_product,
    )
    _append_movement(
        inventory, 'inward', warehouse_product.approved_qty, warehouse_product.approved_qty, actor,
        reason='Warehouse approval',
        to_warehouse=warehouse,
        to_location=inventory.location_label,
        reference_type='warehouse_approval',
        reference_id=approval.id,
        reference_number=approval.approval_number,
    )
    logger.info(
        "Created inventory %s: %s x %s batch %s at %s",
        inventory.id, warehouse_product.approved_qty, warehouse_product.product.product_code,
        warehouse_product.batch_no, warehouse.code
    )
    return inventory


# ============================================================================
# LEDGER PROJECTION
# ============================================================================

def _ledger_balances(inventory):
    current = inventory.movements.aggregate(total=Sum('quantity_delta'))['total'] or 0
    reserved = inventory.reservations.filter(is_released=False).aggregate(total=Sum('quantity'))['total'] or 0
    return current, reserved


def verify_ledger(inventory):
    """
    Compare stored balances with the ledgers.

    Returns:
        dict: {field: {'stored': x, 'ledger': y}} for every mismatch (empty when consistent)
    """
    inventory = InventoryRecord.objects.get(pk=getattr(inventory, 'pk', inventory))
    current, reserved = _ledger_balances(inventory)
    expected = {
        'current_stock': current,
        'reserved_stock': reserved,
        'available_stock': current - reserved,
    }
    return {
        field: {'stored': getattr(inventory, field), 'ledger': value}
        for field, value in expected.items()
        if getattr(inventory, field) != value
    }


def rebuild_balances(inventory):
    """Recompute stored balances from the ledgers. Safe to run repeatedly."""
    with transaction.atomic():
        inventory = InventoryRecord.get_for_update(inventory)
        current, reserved = _ledger_balances(inventory)
        if (inventory.current_stock, inventory.reserved_stock) != (current, reserved):
            logger.warning(
                "Rebuilding inventory %s balances: current %s -> %s, reserved %s -> %s",
                inventory.id, inventory.current_stock, current, inventory.reserved_stock, reserved
            )
        inventory.current_stock = current
        inventory.reserved_stock = reserved
        inventory.save()
    return inventory

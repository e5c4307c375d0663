from datetime import timedelta

import pytest
from django.core.exceptions import ValidationError
from django.core.management import call_command
from django.utils import timezone

from core.exceptions import InsufficientStock, InvalidInput, InvalidQuantity, NotFound
from inventory.models import InventoryRecord, StockMovement, StockReservation
from inventory.services import (
    add_stock, adjust_stock, rebuild_balances, record_utilization, release_expired_reservations,
    release_reservation, remove_stock, reserve_stock, transfer_stock, verify_ledger,
)


pytestmark = pytest.mark.django_db


def balances(record):
    record.refresh_from_db()
    return record.current_stock, record.reserved_stock, record.available_stock


class TestBasicMovements:
    def test_add(self, stock, buyer):
        movement = add_stock(stock, 5, actor=buyer, reason='Found in audit')
        assert balances(stock) == (100, 0, 100)
        assert (movement.movement_type, movement.quantity_delta, movement.sequence) == ('inward', 5, 2)

    def test_remove(self, stock, buyer):
        movement = remove_stock(stock, 15, actor=buyer, reason='Scrapped')
        assert balances(stock) == (80, 0, 80)
        assert movement.quantity_delta == -15

    def test_remove_more_than_available(self, stock, buyer):
        reserve_stock(stock, 90, actor=buyer)
        with pytest.raises(InsufficientStock) as exc:
            remove_stock(stock, 10, actor=buyer)
        assert exc.value.details['available'] == 5
        assert balances(stock) == (95, 90, 5)
        assert stock.movements.count() == 1

    @pytest.mark.parametrize('qty', [0, -3, 2.5, True])
    def test_invalid_quantities(self, stock, buyer, qty):
        with pytest.raises(InvalidQuantity):
            add_stock(stock, qty, actor=buyer)

    def test_adjust(self, stock, buyer):
        adjust_stock(stock, -7, actor=buyer, reason='Cycle count')
        assert balances(stock) == (88, 0, 88)
        movement = stock.movements.order_by('-sequence').first()
        assert (movement.movement_type, movement.quantity, movement.quantity_delta) == ('adjustment', 7, -7)

    def test_adjust_needs_reason(self, stock, buyer):
        with pytest.raises(InvalidInput):
            adjust_stock(stock, 3, actor=buyer)

    def test_missing_record(self, buyer):
        with pytest.raises(NotFound):
            add_stock('00000000-0000-0000-0000-000000000000', 1, actor=buyer)


class TestReservations:
    def test_reserve_and_release(self, stock, buyer):
        reservation = reserve_stock(stock, 20, actor=buyer, holder_reference='HOSP-1')
        assert balances(stock) == (95, 20, 75)

        release_reservation(reservation, actor=buyer, reason='Order cancelled')
        assert balances(stock) == (95, 0, 95)
        reservation.refresh_from_db()
        assert (reservation.is_released, reservation.release_reason) == (True, 'Order cancelled')

    def test_release_is_idempotent(self, stock, buyer):
        reservation = reserve_stock(stock, 20, actor=buyer)
        release_reservation(reservation, actor=buyer)
        release_reservation(reservation, actor=buyer)
        assert balances(stock) == (95, 0, 95)

    def test_reserve_more_than_available(self, stock, buyer):
        with pytest.raises(InsufficientStock):
            reserve_stock(stock, 96, actor=buyer)
        assert not StockReservation.objects.exists()

    def test_unknown_purpose(self, stock, buyer):
        with pytest.raises(InvalidInput):
            reserve_stock(stock, 1, actor=buyer, reserved_for='gift')

    def test_release_expired(self, stock, buyer):
        now = timezone.now()
        lapsed = reserve_stock(stock, 10, actor=buyer, expires_at=now - timedelta(hours=1))
        active = reserve_stock(stock, 5, actor=buyer, expires_at=now + timedelta(days=1))
        reserve_stock(stock, 3, actor=buyer)

        assert release_expired_reservations(now=now) == 1
        assert balances(stock) == (95, 8, 87)
        lapsed.refresh_from_db()
        active.refresh_from_db()
        assert (lapsed.is_released, lapsed.release_reason) == (True, 'expired')
        assert not active.is_released

    def test_release_expired_command(self, stock, buyer, capsys):
        reserve_stock(stock, 10, actor=buyer, expires_at=timezone.now() - timedelta(minutes=5))
        call_command('release_expired_reservations')
        assert 'Released 1 expired reservation' in capsys.readouterr().out
        assert balances(stock) == (95, 0, 95)


class TestTransfer:
    def test_to_other_warehouse(self, stock, buyer, second_warehouse):
        destination = transfer_stock(stock, 30, second_warehouse, actor=buyer, to_location={'zone': 'B'})

        assert balances(stock) == (65, 0, 65)
        assert balances(destination) == (30, 0, 30)
        assert destination.warehouse == second_warehouse
        assert (destination.batch_no, destination.exp_date, destination.unit_cost) == (
            stock.batch_no, stock.exp_date, stock.unit_cost
        )
        assert destination.transferred_from == stock
        assert destination.location_label == 'B'

        out = stock.movements.order_by('-sequence').first()
        assert (out.movement_type, out.quantity_delta, out.to_warehouse) == ('transfer', -30, second_warehouse)
        assert out.reference_id == destination.id

    def test_within_warehouse_relocates(self, stock, buyer, warehouse):
        result = transfer_stock(stock, 10, warehouse, actor=buyer, to_location={'zone': 'C', 'rack': '2'})

        assert result.pk == stock.pk
        assert InventoryRecord.objects.count() == 1
        assert balances(stock) == (95, 0, 95)
        assert stock.location_label == 'C-2'
        movement = stock.movements.order_by('-sequence').first()
        assert (movement.from_location, movement.to_location, movement.quantity_delta) == ('UNASSIGNED', 'C-2', 0)

    def test_within_warehouse_keeps_unspecified_location(self, stock, buyer, warehouse):
        InventoryRecord.objects.filter(pk=stock.pk).update(zone='COLD', rack='R1')
        transfer_stock(stock, 10, warehouse, actor=buyer, to_location={'rack': 'R2'})
        stock.refresh_from_db()
        assert stock.location_label == 'COLD-R2'

    def test_within_warehouse_needs_location(self, stock, buyer, warehouse):
        InventoryRecord.objects.filter(pk=stock.pk).update(zone='COLD', rack='R1')
        with pytest.raises(InvalidInput):
            transfer_stock(stock, 10, warehouse, actor=buyer)
        stock.refresh_from_db()
        assert stock.location_label == 'COLD-R1'
        assert stock.movements.count() == 1

    def test_cannot_move_reserved_units(self, stock, buyer, second_warehouse):
        reserve_stock(stock, 90, actor=buyer)
        with pytest.raises(InsufficientStock):
            transfer_stock(stock, 10, second_warehouse, actor=buyer)
        assert InventoryRecord.objects.count() == 1

    def test_unknown_destination(self, stock, buyer):
        with pytest.raises(NotFound):
            transfer_stock(stock, 10, '00000000-0000-0000-0000-000000000000', actor=buyer)


class TestUtilization:
    def test_records_consumer_and_movement(self, stock, buyer):
        entry = record_utilization(
            stock, 4, actor=buyer,
            consumer_reference='CASE-77',
            consumer_name='City Hospital',
            hospital_name='City Hospital',
            doctor_name='Dr. Rao',
            case_number='77',
        )
        assert balances(stock) == (91, 0, 91)
        assert entry.movement.quantity_delta == -4
        assert entry.movement.reference_number == 'CASE-77'
        assert entry.doctor_name == 'Dr. Rao'

    def test_long_reference_kept_whole(self, stock, buyer):
        reference = 'REQ-' + 'X' * 60
        entry = record_utilization(stock, 1, actor=buyer, consumer_reference=reference)
        assert entry.movement.reference_number == reference

    def test_reference_too_long(self, stock, buyer):
        with pytest.raises(InvalidInput):
            record_utilization(stock, 1, actor=buyer, consumer_reference='R' * 101)
        assert balances(stock) == (95, 0, 95)
        assert stock.movements.count() == 1

    def test_unknown_consumer_field(self, stock, buyer):
        with pytest.raises(InvalidInput):
            record_utilization(stock, 1, actor=buyer, ward='ICU')
        assert balances(stock) == (95, 0, 95)

    def test_more_than_available(self, stock, buyer):
        with pytest.raises(InsufficientStock):
            record_utilization(stock, 96, actor=buyer)


class TestLedger:
    def test_consistent_ledger(self, stock, buyer):
        reserve_stock(stock, 5, actor=buyer)
        remove_stock(stock, 10, actor=buyer)
        assert verify_ledger(stock) == {}
        assert sum(stock.movements.values_list('quantity_delta', flat=True)) == 85

    def test_rebuild_repairs_drift(self, stock, buyer):
        reserve_stock(stock, 5, actor=buyer)
        InventoryRecord.objects.filter(pk=stock.pk).update(current_stock=50, reserved_stock=0, available_stock=50)

        drift = verify_ledger(stock)
        assert drift['current_stock'] == {'stored': 50, 'ledger': 95}
        assert drift['reserved_stock'] == {'stored': 0, 'ledger': 5}

        rebuild_balances(stock)
        assert balances(stock) == (95, 5, 90)
        assert verify_ledger(stock) == {}

    def test_movements_are_append_only(self, stock):
        movement = stock.movements.get()
        movement.reason = 'rewritten'
        with pytest.raises(ValidationError):
            movement.save()
        with pytest.raises(ValidationError):
            movement.delete()
        assert StockMovement.objects.get().reason == 'Opening balance'

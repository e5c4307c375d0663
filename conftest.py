"""
Shared pytest fixtures
======================
Master data, actors and helpers that walk a purchase order through the
pipeline.
"""

from datetime import date
from decimal import Decimal

import pytest

from core.models import Warehouse
from inventory.models import InventoryRecord, Principal, Product
from inventory.services import add_stock
from procurement import services as po_services
from procurement.receiving import submit_receiving


@pytest.fixture
def buyer(db, django_user_model):
    return django_user_model.objects.create_user(username='buyer', password='secret')


@pytest.fixture
def manager(db, django_user_model):
    return django_user_model.objects.create_user(username='manager', password='secret')


@pytest.fixture
def warehouse(db):
    return Warehouse.objects.create(code='WH-MAIN', name='Main Warehouse', is_default=True)


@pytest.fixture
def second_warehouse(db):
    return Warehouse.objects.create(code='WH-NORTH', name='North Warehouse')


@pytest.fixture
def principal(db):
    return Principal.objects.create(
        principal_code='PR-001',
        name='Acme Medical',
        email='orders@acme.test',
    )


@pytest.fixture
def product(principal, warehouse):
    return Product.objects.create(
        product_code='STENT-01',
        name='Coronary Stent',
        principal=principal,
        default_warehouse=warehouse,
        minimum_stock=10,
    )


@pytest.fixture
def other_product(principal, warehouse):
    return Product.objects.create(
        product_code='CATH-02',
        name='Guiding Catheter',
        principal=principal,
        default_warehouse=warehouse,
    )


@pytest.fixture
def draft_po(principal, product, buyer):
    return po_services.create_purchase_order(
        principal,
        [{'product': product, 'ordered_qty': 100, 'unit_price': Decimal('12.50')}],
        actor=buyer,
    )


@pytest.fixture
def approve_to_ordered(manager):
    """Walk a draft purchase order through submission and every approval level."""
    def _approve(po):
        po = po_services.submit_purchase_order(po, actor=po.requested_by)
        for _level in range(3):
            po = po_services.approve_purchase_order(po, actor=manager)
        return po
    return _approve


@pytest.fixture
def ordered_po(draft_po, approve_to_ordered):
    return approve_to_ordered(draft_po)


@pytest.fixture
def receive(buyer):
    """Submit a receiving for one product."""
    def _receive(po, product, qty, batch_no='B1', **fields):
        return submit_receiving(
            po,
            [{
                'product': product,
                'received_qty': qty,
                'batch_no': batch_no,
                'mfg_date': date(2024, 1, 1),
                'exp_date': date(2030, 1, 1),
            }],
            actor=buyer,
            invoice_number=fields.pop('invoice_number', f'INV-{batch_no}-{qty}'),
            **fields
        )
    return _receive


@pytest.fixture
def stock(product, warehouse, buyer):
    """Inventory record holding 95 units of batch B1."""
    record = InventoryRecord.objects.create(
        product=product,
        batch_no='B1',
        exp_date=date(2030, 1, 1),
        warehouse=warehouse,
        minimum_stock=10,
        unit_cost=Decimal('12.50'),
    )
    add_stock(record, 95, actor=buyer, reason='Opening balance')
    record.refresh_from_db()
    return record

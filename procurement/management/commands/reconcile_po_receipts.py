"""
Reconcile PO Receipts Command
=============================
Re-projects received and backlog quantities from invoice receivings onto
purchase orders. Safe to run repeatedly.

Usage:
    python manage.py reconcile_po_receipts
    python manage.py reconcile_po_receipts --po PO-2024-0001
"""

from django.core.management.base import BaseCommand, CommandError

from procurement.models import PurchaseOrder
from procurement.receiving import recompute_po_receipts


class Command(BaseCommand):
    help = 'Recomputes received and backlog quantities for purchase orders'

    def add_arguments(self, parser):
        parser.add_argument(
            '--po',
            type=str,
            help='Only reconcile this PO number',
        )

    def handle(self, *args, **options):
        orders = PurchaseOrder.objects.exclude(stage__in=['draft', 'pending_approval', 'approved_l1', 'approved_final'])
        if options.get('po'):
            orders = orders.filter(po_number=options['po'])
            if not orders.exists():
                raise CommandError(f"No receivable purchase order '{options['po']}'")

        count = 0
        for po_id in orders.values_list('id', flat=True):
            po = recompute_po_receipts(po_id)
            count += 1
            self.stdout.write(f'  • {po.po_number}: {po.status}')

        self.stdout.write(self.style.SUCCESS(f'\n✓ Reconciled {count} purchase order(s)'))

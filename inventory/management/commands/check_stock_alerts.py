"""
Check Stock Alerts Command
==========================
Lists low stock, out of stock, near expiry and expired batches.

Usage:
    python manage.py check_stock_alerts
    python manage.py check_stock_alerts --warehouse WH-MAIN
"""

from django.core.management.base import BaseCommand, CommandError

from core.models import Warehouse
from inventory.models import get_inventory_alerts, get_inventory_valuation


class Command(BaseCommand):
    help = 'Lists stock alerts for active inventory records'

    def add_arguments(self, parser):
        parser.add_argument(
            '--warehouse',
            type=str,
            help='Restrict to one warehouse code',
        )

    def handle(self, *args, **options):
        warehouse = None
        if options.get('warehouse'):
            warehouse = Warehouse.objects.filter(code=options['warehouse']).first()
            if warehouse is None:
                raise CommandError(f"Unknown warehouse '{options['warehouse']}'")

        alerts = get_inventory_alerts(warehouse)
        total = sum(len(records) for records in alerts.values())

        if not total:
            self.stdout.write(self.style.SUCCESS('✓ No stock alerts'))
        else:
            for kind, records in alerts.items():
                if not records:
                    continue
                title = kind.replace('_', ' ').title()
                style = self.style.ERROR if kind in ('out_of_stock', 'expired') else self.style.WARNING
                self.stdout.write(style(f'{title} ({len(records)}):'))
                for record in records:
                    self.stdout.write(
                        f'  • {record.product.product_code} batch {record.batch_no} '
                        f'@ {record.warehouse.code}/{record.location_label} '
                        f'available={record.available_stock} min={record.minimum_stock} '
                        f'exp={record.exp_date or "-"}'
                    )

        valuation = get_inventory_valuation(warehouse)
        self.stdout.write(
            f"\nStock value: {valuation['value']} across {valuation['records']} record(s), "
            f"{valuation['quantity']} unit(s)"
        )
        if total:
            self.stdout.write(self.style.WARNING(f'\n⚠ Total: {total} alert(s)'))

"""
Release Expired Reservations Command
====================================
Returns the quantity of every lapsed reservation to available stock.

Usage:
    python manage.py release_expired_reservations
"""

from django.core.management.base import BaseCommand

from inventory.services import release_expired_reservations


class Command(BaseCommand):
    help = 'Releases stock reservations whose expiry has passed'

    def handle(self, *args, **options):
        released = release_expired_reservations()
        if released:
            self.stdout.write(self.style.SUCCESS(f'✓ Released {released} expired reservation(s)'))
        else:
            self.stdout.write(self.style.SUCCESS('✓ No expired reservations'))

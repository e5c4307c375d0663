"""Access to the ``PROCUREMENT`` settings dict with defaults."""

from decimal import Decimal

from django.conf import settings

DEFAULTS = {
    'RECEIVING_TOLERANCE': Decimal('0.10'),
    'WAREHOUSE_APPROVAL_LEVELS': 1,
    'NEAR_EXPIRY_DAYS': 30,
    'PO_NOTIFICATION_FROM': None,
    'PO_NOTIFICATION_RECIPIENTS': [],
}


def procurement_setting(name):
    """Return a pipeline policy value, falling back to the built-in default."""
    if name not in DEFAULTS:
        raise KeyError(f"Unknown procurement setting: {name}")
    return getattr(settings, 'PROCUREMENT', {}).get(name, DEFAULTS[name])


def receiving_tolerance():
    return Decimal(str(procurement_setting('RECEIVING_TOLERANCE')))

"""
Purchase Order Notifications
============================
E-mails the principal when a purchase order is placed. Delivery failures
are logged and never reach the workflow.
"""

import logging

from django.conf import settings
from django.core.mail import EmailMessage
from django.dispatch import receiver

from core.conf import procurement_setting
from .signals import purchase_order_ordered

logger = logging.getLogger(__name__)


def build_po_email(po):
    recipients = list(po.to_emails or [])
    if not recipients and po.principal.email:
        recipients = [po.principal.email]
    recipients += [r for r in procurement_setting('PO_NOTIFICATION_RECIPIENTS') if r not in recipients]

    lines = [
        f"Purchase Order: {po.po_number}",
        f"Date: {po.po_date:%Y-%m-%d}",
        f"Principal: {po.principal.name}",
        "",
    ]
    for line in po.lines.select_related('product'):
        lines.append(
            f"- {line.product.product_code} {line.product.name}: "
            f"{line.ordered_qty} {line.product.unit} @ {line.unit_price}"
        )
    lines += ["", f"Grand total: {po.grand_total}"]
    if po.terms:
        lines += ["", po.terms]

    return EmailMessage(
        subject=f"Purchase Order {po.po_number}",
        body="\n".join(lines),
        from_email=procurement_setting('PO_NOTIFICATION_FROM') or settings.DEFAULT_FROM_EMAIL,
        to=recipients,
        cc=list(po.cc_emails or []),
    )


@receiver(purchase_order_ordered, dispatch_uid='procurement.send_po_ordered_email')
def send_po_ordered_email(sender, purchase_order, **kwargs):
    message = build_po_email(purchase_order)
    if not message.to:
        logger.warning("PO %s ordered but has no notification recipients", purchase_order.po_number)
        return
    try:
        message.send()
    except Exception:
        logger.exception("Failed to send order e-mail for PO %s", purchase_order.po_number)
        return
    logger.info("Sent order e-mail for PO %s to %s", purchase_order.po_number, ', '.join(message.to))

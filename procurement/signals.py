"""
Procurement Signals
===================
``purchase_order_ordered`` is sent after the transaction that moves a
purchase order to ``ordered`` commits. Receivers get ``purchase_order``.
"""

from django.dispatch import Signal

purchase_order_ordered = Signal()

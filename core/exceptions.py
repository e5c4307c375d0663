"""
Pipeline Errors
===============
This module contains:
1. ProcurementError - base error carrying the offending identities/quantities
2. InvalidInput family - malformed input (retrying the same input never helps)
3. StateConflict family - valid input against the wrong current state
4. NotFound - referenced aggregate or index missing
"""


class ProcurementError(Exception):
    """
    Base class for every error raised by the pipeline services.

    Extra keyword arguments are kept in ``details`` so callers can report
    the exact quantities and identities that caused the failure.
    """
    code = 'procurement_error'

    def __init__(self, message, **details):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self):
        return {
            'code': self.code,
            'message': self.message,
            'details': {key: _plain(value) for key, value in self.details.items()},
        }


def _plain(value):
    if isinstance(value, (int, float, bool, str)) or value is None:
        return value
    return str(value)


# ============================================================================
# VALIDATION ERRORS
# ============================================================================

class InvalidInput(ProcurementError):
    code = 'invalid_input'


class InvalidQuantity(InvalidInput):
    code = 'invalid_quantity'


# ============================================================================
# STATE CONFLICTS
# ============================================================================

class StateConflict(ProcurementError):
    code = 'state_conflict'


class InvalidPOState(StateConflict):
    code = 'invalid_po_state'


class ForbiddenTransition(StateConflict):
    code = 'forbidden_transition'


class OverReceiptError(StateConflict):
    code = 'over_receipt'


class InsufficientStock(StateConflict):
    code = 'insufficient_stock'


class IncompleteSubmission(StateConflict):
    code = 'incomplete_submission'


# ============================================================================
# LOOKUP
# ============================================================================

class NotFound(ProcurementError):
    code = 'not_found'

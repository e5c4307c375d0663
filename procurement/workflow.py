"""
Purchase Order Workflow
=======================
Stage table for the purchase order state machine.

Each stage maps the actions it allows to the stage the action leads to.
A target of ``None`` means the action is allowed but does not itself move
the stage (``edit`` keeps the PO in draft; ``receive`` moves it through the
receipt projection instead).
"""

from core.exceptions import ForbiddenTransition


# ============================================================================
# STAGES
# ============================================================================

DRAFT = 'draft'
PENDING_APPROVAL = 'pending_approval'
APPROVED_L1 = 'approved_l1'
APPROVED_FINAL = 'approved_final'
ORDERED = 'ordered'
PARTIAL_RECEIVED = 'partial_received'
RECEIVED = 'received'
QC_PENDING = 'qc_pending'
QC_PASSED = 'qc_passed'
QC_FAILED = 'qc_failed'
COMPLETED = 'completed'
CANCELLED = 'cancelled'
REJECTED = 'rejected'

STAGE_CHOICES = [
    (DRAFT, 'Draft'),
    (PENDING_APPROVAL, 'Pending Approval'),
    (APPROVED_L1, 'Approved (Level 1)'),
    (APPROVED_FINAL, 'Approved (Final)'),
    (ORDERED, 'Ordered'),
    (PARTIAL_RECEIVED, 'Partially Received'),
    (RECEIVED, 'Received'),
    (QC_PENDING, 'QC Pending'),
    (QC_PASSED, 'QC Passed'),
    (QC_FAILED, 'QC Failed'),
    (COMPLETED, 'Completed'),
    (CANCELLED, 'Cancelled'),
    (REJECTED, 'Rejected'),
]

STATUS_FOR_STAGE = {
    DRAFT: 'draft',
    PENDING_APPROVAL: 'pending_approval',
    APPROVED_L1: 'approved',
    APPROVED_FINAL: 'approved',
    ORDERED: 'ordered',
    PARTIAL_RECEIVED: 'partial_received',
    RECEIVED: 'received',
    QC_PENDING: 'qc_pending',
    QC_PASSED: 'qc_passed',
    QC_FAILED: 'qc_failed',
    COMPLETED: 'completed',
    CANCELLED: 'cancelled',
    REJECTED: 'rejected',
}

STATUS_CHOICES = [
    ('draft', 'Draft'),
    ('pending_approval', 'Pending Approval'),
    ('approved', 'Approved'),
    ('ordered', 'Ordered'),
    ('partial_received', 'Partially Received'),
    ('received', 'Received'),
    ('qc_pending', 'QC Pending'),
    ('qc_passed', 'QC Passed'),
    ('qc_failed', 'QC Failed'),
    ('completed', 'Completed'),
    ('cancelled', 'Cancelled'),
    ('rejected', 'Rejected'),
]

TERMINAL_STAGES = frozenset([COMPLETED, CANCELLED, REJECTED])

# Stages in which the purchase order accepts goods
RECEIVABLE_STATUSES = frozenset(['ordered', 'partial_received', 'received'])
RECEIPT_STAGES = frozenset([ORDERED, PARTIAL_RECEIVED, RECEIVED])


# ============================================================================
# TRANSITIONS
# ============================================================================

TRANSITIONS = {
    DRAFT: {'edit': None, 'submit': PENDING_APPROVAL, 'cancel': CANCELLED},
    PENDING_APPROVAL: {'approve': APPROVED_L1, 'reject': REJECTED, 'return': DRAFT, 'cancel': CANCELLED},
    APPROVED_L1: {'approve': APPROVED_FINAL, 'reject': REJECTED, 'return': PENDING_APPROVAL, 'cancel': CANCELLED},
    APPROVED_FINAL: {'approve': ORDERED, 'reject': REJECTED, 'cancel': CANCELLED},
    ORDERED: {'receive': None, 'cancel': CANCELLED},
    PARTIAL_RECEIVED: {'receive': None, 'qc_check': QC_PENDING, 'cancel': CANCELLED},
    RECEIVED: {'receive': None, 'qc_check': QC_PENDING, 'cancel': CANCELLED},
    QC_PENDING: {'approve': QC_PASSED, 'reject': QC_FAILED, 'cancel': CANCELLED},
    QC_PASSED: {'complete': COMPLETED, 'cancel': CANCELLED},
    QC_FAILED: {'return': ORDERED, 'reject': REJECTED, 'cancel': CANCELLED},
    COMPLETED: {},
    CANCELLED: {},
    REJECTED: {},
}

# Actions that need a written reason
REMARKS_REQUIRED = frozenset(['reject', 'return', 'cancel'])


def status_for_stage(stage):
    return STATUS_FOR_STAGE[stage]


def allowed_actions(stage):
    return sorted(TRANSITIONS.get(stage, {}))


def is_allowed(stage, action):
    return action in TRANSITIONS.get(stage, {})


def next_stage(stage, action):
    """
    Stage reached by performing ``action`` in ``stage``.

    Raises:
        ForbiddenTransition: action is not in the stage's allowed-action set
    """
    if not is_allowed(stage, action):
        raise ForbiddenTransition(
            f"Action '{action}' is not allowed in stage '{stage}'",
            stage=stage,
            action=action,
            allowed=allowed_actions(stage),
        )
    target = TRANSITIONS[stage][action]
    return stage if target is None else target


def replay_stage(entries):
    """
    Rebuild the current stage from workflow history entries.

    Every entry must start from the stage the previous one ended in and be
    an allowed action there. Receipt entries carry the stage computed by the
    receipt projection; every other entry must agree with the table.

    Raises:
        ValueError: the history is not a valid chain
    """
    stage = None
    for entry in entries:
        if stage is None:
            if entry.action != 'created' or entry.stage != DRAFT:
                raise ValueError("History must start with a 'created' entry in draft")
            stage = DRAFT
            continue

        if entry.from_stage != stage:
            raise ValueError(
                f"Entry {entry.sequence} starts from '{entry.from_stage}' but stage was '{stage}'"
            )
        if not is_allowed(stage, entry.action):
            raise ValueError(f"Entry {entry.sequence}: '{entry.action}' not allowed in '{stage}'")

        target = TRANSITIONS[stage][entry.action]
        if target is None:
            if entry.action == 'receive' and entry.stage not in RECEIPT_STAGES:
                raise ValueError(f"Entry {entry.sequence}: receipt cannot lead to '{entry.stage}'")
            if entry.action == 'edit' and entry.stage != stage:
                raise ValueError(f"Entry {entry.sequence}: edit cannot change the stage")
            stage = entry.stage
        else:
            if entry.stage != target:
                raise ValueError(
                    f"Entry {entry.sequence}: '{entry.action}' leads to '{target}', not '{entry.stage}'"
                )
            stage = target

    if stage is None:
        raise ValueError("Empty history")
    return stage

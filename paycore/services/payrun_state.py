"""
Payrun lifecycle state machine.

    draft/pending --approve--> approved --complete--> paid
    draft/pending/approved --rollback--> (deleted)

``evaluate_transition`` is the only place transitions are decided; the
lifecycle service applies whatever it returns.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Tuple

from paycore.models.payrun import PayrunStatus


class PayrunAction(str, Enum):
    """Lifecycle actions on an existing payrun."""
    APPROVE = "approve"
    COMPLETE = "complete"
    ROLLBACK = "rollback"


# (current status, action) -> resulting status; None means the payrun is deleted.
TRANSITIONS: Dict[Tuple[PayrunStatus, PayrunAction], Optional[PayrunStatus]] = {
    (PayrunStatus.DRAFT, PayrunAction.APPROVE): PayrunStatus.APPROVED,
    (PayrunStatus.PENDING, PayrunAction.APPROVE): PayrunStatus.APPROVED,
    (PayrunStatus.APPROVED, PayrunAction.COMPLETE): PayrunStatus.PAID,
    (PayrunStatus.DRAFT, PayrunAction.ROLLBACK): None,
    (PayrunStatus.PENDING, PayrunAction.ROLLBACK): None,
    (PayrunStatus.APPROVED, PayrunAction.ROLLBACK): None,
}

REJECTION_REASONS: Dict[PayrunAction, str] = {
    PayrunAction.APPROVE: "Only draft or pending payruns can be approved",
    PayrunAction.COMPLETE: "Only approved payruns can be completed",
    PayrunAction.ROLLBACK: "Paid payruns cannot be rolled back",
}


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of asking whether ``action`` may run from ``current``."""
    current: PayrunStatus
    action: PayrunAction
    allowed: bool
    target: Optional[PayrunStatus] = None
    reason: Optional[str] = None
    
    @property
    def deletes(self) -> bool:
        return self.allowed and self.target is None


def evaluate_transition(current: PayrunStatus, action: PayrunAction) -> TransitionResult:
    key = (PayrunStatus(current), PayrunAction(action))
    if key in TRANSITIONS:
        return TransitionResult(current=key[0], action=key[1], allowed=True, target=TRANSITIONS[key])
    
    reason = REJECTION_REASONS[key[1]]
    if key == (PayrunStatus.APPROVED, PayrunAction.APPROVE):
        reason = "Payrun is already approved"
    elif key == (PayrunStatus.PAID, PayrunAction.COMPLETE):
        reason = "Payrun is already paid"
    return TransitionResult(
        current=key[0],
        action=key[1],
        allowed=False,
        reason=f"{reason} (current status: {key[0].value})",
    )

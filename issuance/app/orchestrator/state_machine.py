"""
Document lifecycle transitions.

The table below is the single source of truth for which operation may
move a document out of which status. The repository enforces it
atomically (the allowed sources go into the UPDATE's WHERE clause);
``require_transition`` gives callers an early, readable failure before
any work is done.
"""

from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, NamedTuple

from issuance.app.core.errors import PreconditionFailed
from issuance.app.db.models import DocumentStatus


class Operation(str, Enum):
    CLAIM = "approve"
    MINT_SUCCEEDED = "approve_success"
    MINT_FAILED = "approve_failure"
    REJECT = "reject"
    REVOKE = "revoke"


class Transition(NamedTuple):
    sources: FrozenSet[DocumentStatus]
    target: DocumentStatus


TRANSITIONS: Dict[Operation, Transition] = {
    Operation.CLAIM: Transition(
        frozenset({DocumentStatus.DRAFT, DocumentStatus.PENDING_APPROVAL}),
        DocumentStatus.PENDING_BLOCKCHAIN,
    ),
    Operation.MINT_SUCCEEDED: Transition(
        frozenset({DocumentStatus.PENDING_BLOCKCHAIN}),
        DocumentStatus.MINTED,
    ),
    Operation.MINT_FAILED: Transition(
        frozenset({DocumentStatus.PENDING_BLOCKCHAIN}),
        DocumentStatus.FAILED,
    ),
    Operation.REJECT: Transition(
        frozenset({DocumentStatus.DRAFT, DocumentStatus.PENDING_APPROVAL}),
        DocumentStatus.REJECTED,
    ),
    Operation.REVOKE: Transition(
        frozenset({DocumentStatus.MINTED}),
        DocumentStatus.REVOKED,
    ),
}

TERMINAL_STATUSES = frozenset(
    {DocumentStatus.REVOKED, DocumentStatus.REJECTED, DocumentStatus.FAILED}
)


def can_transition(operation: Operation, status: DocumentStatus) -> bool:
    return DocumentStatus(status) in TRANSITIONS[operation].sources


def require_transition(operation: Operation, status: DocumentStatus) -> Transition:
    """Return the transition, or raise PreconditionFailed naming ``status``."""
    current = DocumentStatus(status)
    transition = TRANSITIONS[operation]
    if current not in transition.sources:
        raise PreconditionFailed(
            f"Cannot {operation.value.replace('_', ' ')} document with status: "
            f"{current.value}",
            current_status=current.value,
        )
    return transition

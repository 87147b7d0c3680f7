"""
Repository Transfer State Transition Validator
==============================================

Transfers move forward only:
    not_started -> invitation_sent -> collaborator_added
                -> ownership_transferred -> completed
with FAILED reachable from any non-terminal state. Manual handovers skip
the invitation and collaborator states entirely.

OWNERSHIP_TRANSFERRED is the in-flight handover marker: it is written before
the provider call and either settles to COMPLETED or is rolled back to the
status recorded in ``status_before_handover``.
"""

import logging
from typing import Dict, Set, Optional, Tuple
from models import TransferStatus, TransferMethod
from utils.escrow_state_validator import StateTransitionError

logger = logging.getLogger(__name__)


class TransferStateValidator:
    """Validates RepositoryTransfer status changes"""

    VALID_TRANSITIONS: Dict[TransferStatus, Set[TransferStatus]] = {
        TransferStatus.NOT_STARTED: {
            TransferStatus.INVITATION_SENT,
            TransferStatus.FAILED,
        },
        TransferStatus.INVITATION_SENT: {
            TransferStatus.COLLABORATOR_ADDED,
            TransferStatus.OWNERSHIP_TRANSFERRED,
            TransferStatus.FAILED,
        },
        TransferStatus.COLLABORATOR_ADDED: {
            TransferStatus.OWNERSHIP_TRANSFERRED,
            TransferStatus.FAILED,
        },
        TransferStatus.OWNERSHIP_TRANSFERRED: {
            TransferStatus.COMPLETED,
            TransferStatus.FAILED,
        },
        TransferStatus.COMPLETED: set(),
        TransferStatus.FAILED: set(),
    }

    # Manual handovers happen outside the provider
    MANUAL_SKIP_TRANSITIONS: Dict[TransferStatus, Set[TransferStatus]] = {
        TransferStatus.NOT_STARTED: {TransferStatus.OWNERSHIP_TRANSFERRED},
    }

    TERMINAL_STATES: Set[TransferStatus] = {
        TransferStatus.COMPLETED,
        TransferStatus.FAILED,
    }

    # Buyer can already read the repository
    ACCESS_GRANTED_STATES: Set[TransferStatus] = {
        TransferStatus.COLLABORATOR_ADDED,
        TransferStatus.OWNERSHIP_TRANSFERRED,
        TransferStatus.COMPLETED,
    }

    @classmethod
    def get_valid_next_states(
        cls, current_status: TransferStatus, method: TransferMethod = TransferMethod.AUTOMATIC
    ) -> Set[TransferStatus]:
        next_states = set(cls.VALID_TRANSITIONS.get(current_status, set()))
        if method == TransferMethod.MANUAL:
            next_states |= cls.MANUAL_SKIP_TRANSITIONS.get(current_status, set())
        return next_states

    @classmethod
    def validate_transition(
        cls,
        from_status: TransferStatus,
        to_status: TransferStatus,
        method: TransferMethod = TransferMethod.AUTOMATIC,
        transfer_id: Optional[int] = None,
    ) -> Tuple[bool, str]:
        """
        Validate if a transfer transition is allowed.

        Returns:
            Tuple[bool, str]: (is_valid, reason)
        """
        ref = f"Transfer {transfer_id}" if transfer_id else "Transfer"

        if from_status == to_status:
            return True, "No status change required"

        valid_next_states = cls.get_valid_next_states(from_status, method)
        if to_status in valid_next_states:
            logger.info(f"✅ VALID_TRANSFER_TRANSITION: {ref} {from_status.value} -> {to_status.value}")
            return True, "Valid state transition"

        error_msg = (
            f"Invalid transfer transition: {from_status.value} -> {to_status.value}. "
            f"Valid transitions from {from_status.value}: {sorted(s.value for s in valid_next_states)}"
        )
        logger.error(f"❌ INVALID_TRANSFER_TRANSITION: {ref} {from_status.value} -> {to_status.value}")
        return False, error_msg

    @classmethod
    def validate_and_transition(cls, transfer, new_status: TransferStatus) -> bool:
        """
        Validate and apply a status change to a RepositoryTransfer row.

        Rolling an in-flight handover back to its stashed status is the one
        backwards move allowed, and goes through ``restore_after_failed_handover``.

        Raises:
            StateTransitionError: If the transition is invalid
        """
        current_status = TransferStatus(transfer.status)
        method = TransferMethod(transfer.method)
        is_valid, reason = cls.validate_transition(current_status, new_status, method, transfer.id)
        if not is_valid:
            raise StateTransitionError(reason)

        transfer.status = new_status.value
        logger.info(
            f"🔄 TRANSFER_STATUS_UPDATED: {transfer.id} {current_status.value} -> {new_status.value}"
        )
        return True

    @classmethod
    def restore_after_failed_handover(cls, transfer) -> TransferStatus:
        """Undo the handover marker after the provider refused the transfer"""
        if transfer.status != TransferStatus.OWNERSHIP_TRANSFERRED.value or not transfer.status_before_handover:
            raise StateTransitionError(
                f"Transfer {transfer.id} has no in-flight handover to restore"
            )
        previous = TransferStatus(transfer.status_before_handover)
        transfer.status = previous.value
        transfer.status_before_handover = None
        transfer.ownership_requested_at = None
        logger.warning(
            f"↩️ HANDOVER_RESTORED: Transfer {transfer.id} back to {previous.value} after provider failure"
        )
        return previous

    @classmethod
    def is_terminal_state(cls, status: TransferStatus) -> bool:
        return status in cls.TERMINAL_STATES

    @classmethod
    def has_buyer_access(cls, status: TransferStatus) -> bool:
        return status in cls.ACCESS_GRANTED_STATES

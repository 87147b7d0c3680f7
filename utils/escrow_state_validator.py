"""
Escrow State Transition Validator
================================

Guards the escrow side of a transaction: funds move from held to released or
refunded, or pause in disputed while an administrator investigates.
"""

import logging
from typing import Dict, Set, Optional, Tuple
from models import EscrowStatus
from utils.marketplace_errors import ValidationError

logger = logging.getLogger(__name__)


class StateTransitionError(ValidationError):
    """Raised when an invalid state transition is attempted"""
    pass


class EscrowStateValidator:
    """
    Validates escrow state transitions.

    Blocks transitions such as:
    - RELEASED -> REFUNDED (funds already paid out)
    - REFUNDED -> HELD (resurrection)
    """

    VALID_TRANSITIONS: Dict[EscrowStatus, Set[EscrowStatus]] = {
        EscrowStatus.HELD: {
            EscrowStatus.RELEASED,
            EscrowStatus.REFUNDED,
            EscrowStatus.DISPUTED,
        },
        # Admin resolves: reinstate, refund, or override-release
        EscrowStatus.DISPUTED: {
            EscrowStatus.HELD,
            EscrowStatus.REFUNDED,
            EscrowStatus.RELEASED,
        },
        EscrowStatus.RELEASED: set(),
        EscrowStatus.REFUNDED: set(),
    }

    TERMINAL_STATES: Set[EscrowStatus] = {
        EscrowStatus.RELEASED,
        EscrowStatus.REFUNDED,
    }

    FUNDS_HELD_STATES: Set[EscrowStatus] = {
        EscrowStatus.HELD,
        EscrowStatus.DISPUTED,
    }

    @classmethod
    def validate_transition(
        cls,
        from_status: EscrowStatus,
        to_status: EscrowStatus,
        transaction_id: Optional[str] = None,
    ) -> Tuple[bool, str]:
        """
        Validate if an escrow transition is allowed.

        Returns:
            Tuple[bool, str]: (is_valid, reason)
        """
        ref = f"Transaction {transaction_id}" if transaction_id else "Transaction"

        if from_status == to_status:
            return True, "No status change required"

        valid_next_states = cls.VALID_TRANSITIONS.get(from_status, set())
        if to_status in valid_next_states:
            logger.info(f"✅ VALID_ESCROW_TRANSITION: {ref} {from_status.value} -> {to_status.value}")
            return True, "Valid state transition"

        logger.error(
            f"❌ INVALID_ESCROW_TRANSITION: {ref} {from_status.value} -> {to_status.value} "
            f"Valid options: {sorted(s.value for s in valid_next_states)}"
        )
        return False, f"Escrow is already {from_status.value}"

    @classmethod
    def validate_and_transition(
        cls,
        transaction,
        new_status: EscrowStatus,
    ) -> bool:
        """
        Validate and apply an escrow transition to a Transaction row.

        Raises:
            StateTransitionError: If the transition is invalid
        """
        current_status = EscrowStatus(transaction.escrow_status)
        is_valid, reason = cls.validate_transition(current_status, new_status, transaction.id)
        if not is_valid:
            raise StateTransitionError(reason)

        transaction.escrow_status = new_status.value
        logger.info(
            f"🔄 ESCROW_STATUS_UPDATED: {transaction.id} {current_status.value} -> {new_status.value}"
        )
        return True

    @classmethod
    def is_terminal_state(cls, status: EscrowStatus) -> bool:
        return status in cls.TERMINAL_STATES

    @classmethod
    def has_funds_held(cls, status: EscrowStatus) -> bool:
        return status in cls.FUNDS_HELD_STATES

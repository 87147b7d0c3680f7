"""
State Validator Tests
Forward-only transfer transitions, handover restore, and escrow terminal states
"""

from types import SimpleNamespace

import pytest

from models import EscrowStatus, TransferMethod, TransferStatus
from utils.escrow_state_validator import EscrowStateValidator, StateTransitionError
from utils.transfer_state_validator import TransferStateValidator


def make_transfer(status: TransferStatus, method: TransferMethod = TransferMethod.AUTOMATIC, **extra):
    return SimpleNamespace(id=1, status=status.value, method=method.value,
                           status_before_handover=None, ownership_requested_at=None, **extra)


class TestTransferStateValidator:
    """Transfer status graph"""

    @pytest.mark.parametrize("from_status,to_status", [
        (TransferStatus.NOT_STARTED, TransferStatus.INVITATION_SENT),
        (TransferStatus.INVITATION_SENT, TransferStatus.COLLABORATOR_ADDED),
        (TransferStatus.INVITATION_SENT, TransferStatus.OWNERSHIP_TRANSFERRED),
        (TransferStatus.COLLABORATOR_ADDED, TransferStatus.OWNERSHIP_TRANSFERRED),
        (TransferStatus.OWNERSHIP_TRANSFERRED, TransferStatus.COMPLETED),
        (TransferStatus.COLLABORATOR_ADDED, TransferStatus.FAILED),
    ])
    def test_forward_transitions_allowed(self, from_status, to_status):
        is_valid, _ = TransferStateValidator.validate_transition(from_status, to_status)
        assert is_valid

    @pytest.mark.parametrize("from_status,to_status", [
        (TransferStatus.COLLABORATOR_ADDED, TransferStatus.INVITATION_SENT),
        (TransferStatus.COMPLETED, TransferStatus.OWNERSHIP_TRANSFERRED),
        (TransferStatus.FAILED, TransferStatus.NOT_STARTED),
        (TransferStatus.NOT_STARTED, TransferStatus.COMPLETED),
    ])
    def test_backward_and_skipping_transitions_rejected(self, from_status, to_status):
        is_valid, reason = TransferStateValidator.validate_transition(from_status, to_status)
        assert not is_valid
        assert from_status.value in reason

    def test_manual_transfer_may_skip_invitation(self):
        assert not TransferStateValidator.validate_transition(
            TransferStatus.NOT_STARTED, TransferStatus.OWNERSHIP_TRANSFERRED
        )[0]
        assert TransferStateValidator.validate_transition(
            TransferStatus.NOT_STARTED, TransferStatus.OWNERSHIP_TRANSFERRED, TransferMethod.MANUAL
        )[0]

    def test_validate_and_transition_updates_row(self):
        transfer = make_transfer(TransferStatus.INVITATION_SENT)
        TransferStateValidator.validate_and_transition(transfer, TransferStatus.COLLABORATOR_ADDED)
        assert transfer.status == TransferStatus.COLLABORATOR_ADDED.value

    def test_validate_and_transition_raises_on_invalid_move(self):
        transfer = make_transfer(TransferStatus.COMPLETED)
        with pytest.raises(StateTransitionError):
            TransferStateValidator.validate_and_transition(transfer, TransferStatus.FAILED)
        assert transfer.status == TransferStatus.COMPLETED.value

    def test_restore_after_failed_handover(self):
        transfer = make_transfer(TransferStatus.OWNERSHIP_TRANSFERRED)
        transfer.status_before_handover = TransferStatus.COLLABORATOR_ADDED.value

        restored = TransferStateValidator.restore_after_failed_handover(transfer)

        assert restored == TransferStatus.COLLABORATOR_ADDED
        assert transfer.status == TransferStatus.COLLABORATOR_ADDED.value
        assert transfer.status_before_handover is None

    def test_restore_requires_handover_marker(self):
        transfer = make_transfer(TransferStatus.COLLABORATOR_ADDED)
        with pytest.raises(StateTransitionError):
            TransferStateValidator.restore_after_failed_handover(transfer)

    def test_buyer_access_states(self):
        assert not TransferStateValidator.has_buyer_access(TransferStatus.INVITATION_SENT)
        assert TransferStateValidator.has_buyer_access(TransferStatus.COLLABORATOR_ADDED)
        assert TransferStateValidator.has_buyer_access(TransferStatus.COMPLETED)


class TestEscrowStateValidator:
    """Escrow never leaves a terminal state"""

    def test_held_can_move_anywhere(self):
        for target in (EscrowStatus.RELEASED, EscrowStatus.REFUNDED, EscrowStatus.DISPUTED):
            assert EscrowStateValidator.validate_transition(EscrowStatus.HELD, target)[0]

    def test_released_is_terminal(self):
        transaction = SimpleNamespace(id="tx-1", escrow_status=EscrowStatus.RELEASED.value)
        with pytest.raises(StateTransitionError, match="already released"):
            EscrowStateValidator.validate_and_transition(transaction, EscrowStatus.REFUNDED)
        assert EscrowStateValidator.is_terminal_state(EscrowStatus.RELEASED)

    def test_refunded_cannot_be_resurrected(self):
        assert not EscrowStateValidator.validate_transition(EscrowStatus.REFUNDED, EscrowStatus.HELD)[0]

    def test_disputed_still_holds_funds(self):
        assert EscrowStateValidator.has_funds_held(EscrowStatus.DISPUTED)
        assert not EscrowStateValidator.has_funds_held(EscrowStatus.RELEASED)

"""
Admin escrow actions: refunds, manual release, and disputes.

These bypass the buyer/seller happy path. Each one requires the persisted
admin flag and a written reason, and writes an audit entry in the same
database transaction as the change it records.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple

from sqlalchemy.orm import Session

from config import Config
from models import EscrowStatus, PaymentStatus, Transaction, TransferStatus
from services.audit_logger import audit_logger
from services.escrow_release_policy import EscrowReleasePolicy
from services.notification_service import NotificationEvent, notification_service
from services.stripe_refund_service import stripe_refund_service
from utils.atomic_transactions import (
    atomic_transaction, lock_repository_transfer, locked_transaction_operation
)
from utils.datetime_helpers import get_naive_utc_now
from utils.escrow_state_validator import EscrowStateValidator
from utils.marketplace_errors import ValidationError
from utils.party_guard import require_admin
from utils.transfer_state_validator import TransferStateValidator

logger = logging.getLogger(__name__)


class AdminActionResult(NamedTuple):
    """Outcome of an admin escrow action"""
    success: bool
    transaction: Transaction
    warnings: Tuple[str, ...] = ()
    refund_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "transaction_id": self.transaction.id,
            "payment_status": self.transaction.payment_status,
            "escrow_status": self.transaction.escrow_status,
            "warnings": list(self.warnings),
            "refund_id": self.refund_id,
        }


def require_reason(reason: Optional[str], label: str) -> str:
    cleaned = (reason or "").strip()
    if len(cleaned) < Config.MIN_ADMIN_REASON_LENGTH:
        raise ValidationError(f"{label} reason must be at least {Config.MIN_ADMIN_REASON_LENGTH} characters")
    return cleaned


class AdminEscrowService:
    """Administrator overrides on a transaction's escrow"""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        payments=None,
        notifier=None,
        clock: Callable[[], datetime] = get_naive_utc_now,
    ):
        self._session_factory = session_factory
        self._payments = payments or stripe_refund_service
        self._notifier = notifier or notification_service
        self._clock = clock

    @staticmethod
    def _reject_inflight_handover(session: Session, transaction: Transaction) -> Optional[str]:
        transfer = lock_repository_transfer(session, transaction.id)
        if transfer is not None and transfer.status == TransferStatus.OWNERSHIP_TRANSFERRED.value:
            raise ValidationError(
                f"Transfer {transfer.id} handover in flight",
                "An ownership transfer is in progress for this transaction",
            )
        return transfer.status if transfer is not None else None

    async def _notify_parties(self, transaction: Transaction, event_type: str, payload: Dict[str, Any]):
        for user_id in (transaction.buyer_id, transaction.seller_id):
            await self._notifier.notify(user_id, event_type, payload)

    async def refund_transaction(
        self, admin_id: int, transaction_id: str, reason: str, ip: Optional[str] = None
    ) -> AdminActionResult:
        """
        Refund the buyer in full.

        The processor refund runs first while the row is locked; local state
        only changes once it succeeds. Never attempts an ownership transfer.
        """
        now = self._clock()
        warnings: List[str] = []

        with atomic_transaction(self._session_factory) as session:
            require_admin(session, admin_id)
            cleaned_reason = require_reason(reason, "Refund")

            with locked_transaction_operation(transaction_id, session) as transaction:
                if transaction.payment_status != PaymentStatus.SUCCEEDED.value:
                    raise ValidationError(
                        f"Cannot refund transaction {transaction.id}: payment is {transaction.payment_status}"
                    )
                previous_escrow = EscrowStatus(transaction.escrow_status)
                if not EscrowStateValidator.has_funds_held(previous_escrow):
                    raise ValidationError(
                        f"Cannot refund transaction {transaction.id}: escrow is already {previous_escrow.value}"
                    )
                transfer_status = self._reject_inflight_handover(session, transaction)
                if not transaction.payment_reference:
                    raise ValidationError(f"Transaction {transaction.id} has no payment reference to refund")

                if transaction.code_accessed_at is not None or transfer_status in (
                    TransferStatus.COLLABORATOR_ADDED.value, TransferStatus.COMPLETED.value
                ):
                    warnings.append("Buyer has already received code access")

                refund = await self._payments.refund(
                    transaction.payment_reference,
                    metadata={"transaction_id": transaction.id, "admin_id": admin_id},
                )

                EscrowStateValidator.validate_and_transition(transaction, EscrowStatus.REFUNDED)
                transaction.payment_status = PaymentStatus.REFUNDED.value
                transaction.refunded_at = now

                transfer = lock_repository_transfer(session, transaction.id)
                if transfer is not None and not TransferStateValidator.is_terminal_state(TransferStatus(transfer.status)):
                    TransferStateValidator.validate_and_transition(transfer, TransferStatus.FAILED)
                    transfer.failed_at = now
                    transfer.error_message = "Transaction refunded by an administrator"

                audit_logger.log_admin_action(
                    session, admin_id, "transaction.refund", "transaction", transaction.id,
                    details={
                        "reason": cleaned_reason,
                        "amount_cents": transaction.amount_cents,
                        "refund_id": refund.refund_id,
                        "previous_escrow_status": previous_escrow.value,
                        "transfer_status": transfer_status,
                        "warnings": warnings,
                    },
                    ip_address=ip,
                )
                session.flush()
                logger.warning(
                    f"💸 TRANSACTION_REFUNDED: {transaction.id} by admin {admin_id} "
                    f"({transaction.amount_cents} cents, refund {refund.refund_id})"
                )

        await self._notify_parties(transaction, NotificationEvent.ESCROW_REFUNDED, {
            "transaction_id": transaction.id, "amount_cents": transaction.amount_cents,
        })
        return AdminActionResult(True, transaction, tuple(warnings), refund.refund_id)

    async def release_escrow_manually(
        self, admin_id: int, transaction_id: str, reason: str, ip: Optional[str] = None
    ) -> AdminActionResult:
        """Dispute-resolution override for ownership handed over out-of-band"""
        now = self._clock()

        with atomic_transaction(self._session_factory) as session:
            require_admin(session, admin_id)
            cleaned_reason = require_reason(reason, "Release")

            with locked_transaction_operation(transaction_id, session) as transaction:
                if transaction.payment_status != PaymentStatus.SUCCEEDED.value:
                    raise ValidationError(
                        f"Cannot release transaction {transaction.id}: payment is {transaction.payment_status}"
                    )
                previous_escrow = EscrowStatus(transaction.escrow_status)
                if not EscrowStateValidator.has_funds_held(previous_escrow):
                    raise ValidationError(
                        f"Cannot release transaction {transaction.id}: escrow is already {previous_escrow.value}"
                    )
                transfer_status = self._reject_inflight_handover(session, transaction)

                EscrowReleasePolicy.apply_release(transaction, now)
                audit_logger.log_admin_action(
                    session, admin_id, "transaction.escrow_release", "transaction", transaction.id,
                    details={
                        "reason": cleaned_reason,
                        "seller_receives_cents": transaction.seller_receives_cents,
                        "previous_escrow_status": previous_escrow.value,
                        "transfer_status": transfer_status,
                    },
                    ip_address=ip,
                )
                session.flush()

        await self._notify_parties(transaction, NotificationEvent.ESCROW_RELEASED, {
            "transaction_id": transaction.id, "amount_cents": transaction.seller_receives_cents,
        })
        return AdminActionResult(True, transaction)

    async def mark_disputed(
        self, admin_id: int, transaction_id: str, reason: str, ip: Optional[str] = None
    ) -> AdminActionResult:
        """Freeze a held escrow while a buyer complaint is investigated"""
        now = self._clock()

        with atomic_transaction(self._session_factory) as session:
            require_admin(session, admin_id)
            cleaned_reason = require_reason(reason, "Dispute")

            with locked_transaction_operation(transaction_id, session) as transaction:
                if transaction.early_released_at is not None:
                    raise ValidationError(
                        f"Transaction {transaction.id} was released early by the seller",
                        "The seller released escrow early; this transaction can no longer be disputed",
                    )
                if transaction.payment_status != PaymentStatus.SUCCEEDED.value:
                    raise ValidationError(
                        f"Cannot dispute transaction {transaction.id}: payment is {transaction.payment_status}"
                    )
                if transaction.escrow_status != EscrowStatus.HELD.value:
                    raise ValidationError(
                        f"Cannot dispute transaction {transaction.id}: escrow is {transaction.escrow_status}"
                    )
                self._reject_inflight_handover(session, transaction)

                EscrowStateValidator.validate_and_transition(transaction, EscrowStatus.DISPUTED)
                transaction.disputed_at = now
                transaction.dispute_reason = cleaned_reason
                audit_logger.log_admin_action(
                    session, admin_id, "transaction.dispute_opened", "transaction", transaction.id,
                    details={"reason": cleaned_reason}, ip_address=ip,
                )
                session.flush()

        await self._notify_parties(transaction, NotificationEvent.ESCROW_DISPUTED, {
            "transaction_id": transaction.id,
        })
        return AdminActionResult(True, transaction)

    async def resolve_dispute(
        self, admin_id: int, transaction_id: str, reason: str, ip: Optional[str] = None
    ) -> AdminActionResult:
        """Reinstate a disputed escrow to held"""
        with atomic_transaction(self._session_factory) as session:
            require_admin(session, admin_id)
            cleaned_reason = require_reason(reason, "Resolution")

            with locked_transaction_operation(transaction_id, session) as transaction:
                if transaction.escrow_status != EscrowStatus.DISPUTED.value:
                    raise ValidationError(
                        f"Transaction {transaction.id} is not under dispute (escrow {transaction.escrow_status})"
                    )
                EscrowStateValidator.validate_and_transition(transaction, EscrowStatus.HELD)
                audit_logger.log_admin_action(
                    session, admin_id, "transaction.dispute_resolved", "transaction", transaction.id,
                    details={"reason": cleaned_reason, "dispute_reason": transaction.dispute_reason},
                    ip_address=ip,
                )
                session.flush()

        await self._notify_parties(transaction, NotificationEvent.DISPUTE_RESOLVED, {
            "transaction_id": transaction.id,
        })
        return AdminActionResult(True, transaction)


admin_escrow_service = AdminEscrowService()

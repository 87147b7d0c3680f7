"""
Escrow Release Policy
=====================

Decides when buyer funds move out of escrow.

- Payment success opens escrow and fixes the release date once
  (paid_at + review period). Nothing moves that date afterwards.
- Release happens through the repository transfer state machine
  (post-review ownership transfer, seller early release), an admin override,
  or the unattended sweep below.
- The sweep releases by time only when nothing is left to deliver: either the
  listing has no hosted repository or its ownership already moved to the
  buyer. A repository that never changed hands keeps its escrow held until the
  seller transfers it.
"""

import logging
from datetime import datetime, timedelta
from decimal import Decimal, ROUND_HALF_UP
from typing import Callable, List, NamedTuple, Optional, Tuple

from sqlalchemy.orm import Session

from config import Config
from models import (
    CodeDeliveryStatus, EscrowStatus, PaymentStatus, Project, RepositoryTransfer,
    Transaction, TransferStatus, User
)
from services.notification_service import NotificationEvent, notification_service
from utils.atomic_transactions import atomic_transaction, locked_transaction_operation
from utils.datetime_helpers import ensure_naive_datetime, get_naive_utc_now
from utils.escrow_state_validator import EscrowStateValidator
from utils.marketplace_errors import NotFoundError, PermissionDeniedError, ValidationError

logger = logging.getLogger(__name__)


def compute_commission(amount_cents: int, rate: Optional[Decimal] = None) -> Tuple[int, int]:
    """Return (commission_cents, seller_receives_cents); the two always sum to the amount"""
    commission_rate = Config.PLATFORM_COMMISSION_RATE if rate is None else Decimal(str(rate))
    commission = int((Decimal(amount_cents) * commission_rate).quantize(Decimal("1"), rounding=ROUND_HALF_UP))
    return commission, amount_cents - commission


def compute_escrow_release_date(payment_succeeded_at: datetime, review_days: Optional[int] = None) -> datetime:
    days = Config.REVIEW_PERIOD_DAYS if review_days is None else review_days
    return ensure_naive_datetime(payment_succeeded_at) + timedelta(days=days)


class ReleaseDecision(NamedTuple):
    released: bool
    reason: str


class EscrowReleaseSweepResult:
    """Result object for one sweep run"""

    def __init__(self, started_at: datetime):
        self.started_at = started_at
        self.processed = 0
        self.successful = 0
        self.failed = 0
        self.skipped = 0
        self.released_transaction_ids: List[str] = []
        self.errors: List[str] = []

    def add_error(self, transaction_id: str, error: str):
        self.failed += 1
        self.errors.append(f"{transaction_id}: {error}")
        logger.error(f"ESCROW_SWEEP_ERROR: {transaction_id}: {error}")

    def get_summary(self) -> dict:
        return {
            "processed": self.processed,
            "successful": self.successful,
            "failed": self.failed,
            "skipped": self.skipped,
            "timestamp": self.started_at.isoformat(),
        }


class EscrowReleasePolicy:
    """Owns escrow opening, eligibility and release"""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        notifier=None,
        clock: Callable[[], datetime] = get_naive_utc_now,
    ):
        self._session_factory = session_factory
        self._notifier = notifier or notification_service
        self._clock = clock

    # ------------------------------------------------------------------
    # Transaction creation and payment events
    # ------------------------------------------------------------------

    def create_transaction(
        self,
        buyer_id: int,
        project_id: int,
        amount_cents: int,
        payment_reference: Optional[str] = None,
    ) -> Transaction:
        """Record a purchase once the processor reports a payment intent"""
        if not isinstance(amount_cents, int) or isinstance(amount_cents, bool) or amount_cents <= 0:
            raise ValidationError("Amount must be a positive number of cents")

        with atomic_transaction(self._session_factory) as session:
            project = session.get(Project, project_id)
            if project is None:
                raise NotFoundError(f"Project {project_id} not found", "Project not found")
            if session.get(User, buyer_id) is None:
                raise NotFoundError(f"Buyer {buyer_id} not found", "Buyer not found")
            if project.seller_id == buyer_id:
                raise PermissionDeniedError(
                    f"User {buyer_id} attempted to buy own project {project_id}",
                    "Cannot purchase your own project",
                )

            commission_cents, seller_receives_cents = compute_commission(amount_cents)
            transaction = Transaction(
                project_id=project.id,
                seller_id=project.seller_id,
                buyer_id=buyer_id,
                amount_cents=amount_cents,
                commission_cents=commission_cents,
                seller_receives_cents=seller_receives_cents,
                payment_reference=payment_reference,
                payment_status=PaymentStatus.PENDING.value,
                escrow_status=EscrowStatus.HELD.value,
                code_delivery_status=CodeDeliveryStatus.PENDING.value,
                created_at=self._clock(),
            )
            session.add(transaction)
            session.flush()

            logger.info(
                f"🧾 TRANSACTION_CREATED: {transaction.id} project={project.id} buyer={buyer_id} "
                f"seller={project.seller_id} amount={amount_cents} commission={commission_cents}"
            )
            return transaction

    async def mark_payment_succeeded(
        self, transaction_id: str, succeeded_at: Optional[datetime] = None
    ) -> Transaction:
        """Open escrow; repeated webhook deliveries leave the first release date intact"""
        paid_at = ensure_naive_datetime(succeeded_at) or self._clock()
        newly_paid = False

        with atomic_transaction(self._session_factory) as session:
            with locked_transaction_operation(transaction_id, session) as transaction:
                payment_status = PaymentStatus(transaction.payment_status)
                if payment_status == PaymentStatus.REFUNDED:
                    raise ValidationError("Payment has already been refunded")

                if payment_status != PaymentStatus.SUCCEEDED:
                    newly_paid = True
                    transaction.payment_status = PaymentStatus.SUCCEEDED.value
                    transaction.escrow_status = EscrowStatus.HELD.value
                    transaction.payment_succeeded_at = paid_at
                    transaction.completed_at = paid_at
                    if not transaction.project.has_repository:
                        transaction.code_delivery_status = CodeDeliveryStatus.DELIVERED.value

                if transaction.escrow_release_date is None:
                    transaction.escrow_release_date = compute_escrow_release_date(
                        transaction.payment_succeeded_at or paid_at
                    )

                logger.info(
                    f"💰 PAYMENT_SUCCEEDED: {transaction.id} escrow held until "
                    f"{transaction.escrow_release_date.isoformat()}"
                    + ("" if newly_paid else " (duplicate event)")
                )

        if newly_paid:
            payload = {"transaction_id": transaction.id, "amount_cents": transaction.amount_cents}
            await self._notifier.notify(transaction.seller_id, NotificationEvent.PAYMENT_RECEIVED, payload)
        return transaction

    def mark_payment_failed(self, transaction_id: str) -> Transaction:
        with atomic_transaction(self._session_factory) as session:
            with locked_transaction_operation(transaction_id, session) as transaction:
                payment_status = PaymentStatus(transaction.payment_status)
                if payment_status == PaymentStatus.FAILED:
                    return transaction
                if payment_status != PaymentStatus.PENDING:
                    raise ValidationError(f"Cannot mark a {payment_status.value} payment as failed")
                transaction.payment_status = PaymentStatus.FAILED.value
                logger.warning(f"⚠️ PAYMENT_FAILED: {transaction.id}")
                return transaction

    # ------------------------------------------------------------------
    # Release
    # ------------------------------------------------------------------

    @staticmethod
    def apply_release(transaction: Transaction, now: datetime, early: bool = False) -> None:
        """
        Move escrow to RELEASED on a locked Transaction row.

        The stored release date is left untouched, including on early release.
        """
        EscrowStateValidator.validate_and_transition(transaction, EscrowStatus.RELEASED)
        transaction.released_to_seller_at = now
        if early:
            transaction.early_released_at = now
        logger.info(
            f"✅ ESCROW_RELEASED: {transaction.id} {transaction.seller_receives_cents} cents to seller "
            f"{transaction.seller_id}" + (" (early release)" if early else "")
        )

    @staticmethod
    def evaluate_release(transaction: Transaction, project: Project,
                         transfer: Optional[RepositoryTransfer], now: datetime) -> ReleaseDecision:
        """Pure eligibility check used by the sweep"""
        if transaction.payment_status != PaymentStatus.SUCCEEDED.value:
            return ReleaseDecision(False, "Payment has not succeeded")
        if transaction.escrow_status != EscrowStatus.HELD.value:
            return ReleaseDecision(False, f"Escrow is {transaction.escrow_status}")
        if transaction.escrow_release_date is None or now < transaction.escrow_release_date:
            return ReleaseDecision(False, "Review period has not ended")

        transfer_status = TransferStatus(transfer.status) if transfer is not None else None
        if transfer_status == TransferStatus.FAILED:
            return ReleaseDecision(False, "Repository transfer failed")
        if transfer_status == TransferStatus.OWNERSHIP_TRANSFERRED:
            return ReleaseDecision(False, "Ownership handover is still in flight")
        if project.has_repository and transfer_status != TransferStatus.COMPLETED:
            return ReleaseDecision(False, "Repository ownership has not been transferred")

        return ReleaseDecision(True, "Review period ended with nothing left to deliver")

    async def release_if_eligible(self, transaction_id: str) -> ReleaseDecision:
        """Release one transaction's escrow if the policy allows it right now"""
        now = self._clock()
        with atomic_transaction(self._session_factory) as session:
            with locked_transaction_operation(transaction_id, session) as transaction:
                transfer = (
                    session.query(RepositoryTransfer)
                    .filter(RepositoryTransfer.transaction_id == transaction.id)
                    .with_for_update()
                    .first()
                )
                decision = self.evaluate_release(transaction, transaction.project, transfer, now)
                if not decision.released:
                    logger.debug(f"ESCROW_RELEASE_SKIPPED: {transaction_id}: {decision.reason}")
                    return decision
                self.apply_release(transaction, now)

        await self._notifier.notify(
            transaction.seller_id, NotificationEvent.ESCROW_RELEASED,
            {"transaction_id": transaction.id, "amount_cents": transaction.seller_receives_cents},
        )
        return decision

    async def run_release_sweep(self, batch_size: Optional[int] = None) -> EscrowReleaseSweepResult:
        """Check every held transaction whose release date has passed"""
        now = self._clock()
        result = EscrowReleaseSweepResult(now)
        limit = batch_size or Config.ESCROW_RELEASE_BATCH_SIZE

        with atomic_transaction(self._session_factory) as session:
            due_ids = [
                row.id for row in session.query(Transaction.id)
                .filter(
                    Transaction.payment_status == PaymentStatus.SUCCEEDED.value,
                    Transaction.escrow_status == EscrowStatus.HELD.value,
                    Transaction.escrow_release_date <= now,
                )
                .order_by(Transaction.escrow_release_date)
                .limit(limit)
                .all()
            ]

        logger.info(f"🔍 ESCROW_SWEEP_START: {len(due_ids)} held transactions past their release date")

        for transaction_id in due_ids:
            result.processed += 1
            try:
                decision = await self.release_if_eligible(transaction_id)
            except Exception as e:
                result.add_error(transaction_id, str(e))
                continue
            if decision.released:
                result.successful += 1
                result.released_transaction_ids.append(transaction_id)
            else:
                result.skipped += 1

        logger.info(f"✅ ESCROW_SWEEP_COMPLETE: {result.get_summary()}")
        return result


escrow_release_policy = EscrowReleasePolicy()

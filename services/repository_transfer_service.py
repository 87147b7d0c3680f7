"""
Repository Transfer Service
===========================

State machine for handing a purchased GitHub repository to the buyer:

    not_started -> invitation_sent -> collaborator_added
                -> ownership_transferred -> completed

Every transition runs inside one database transaction with the Transaction
row locked, re-reads current state before deciding, and checks the caller
against the persisted buyer/seller ids.

Ownership handover touches an external provider and two local rows, so it
runs in three steps:

1. Locked write of the handover marker (status OWNERSHIP_TRANSFERRED plus
   ``ownership_requested_at``), committed before the provider is called.
2. Provider ownership transfer with a bounded timeout.
3. Locked settle: transfer COMPLETED and, when the review period is over or
   the seller releases early, escrow RELEASED, committed together. A provider
   failure instead restores the stashed status so stored state is unchanged.

A crash between 2 and 3 leaves the marker in place for the handover
reconciliation monitor to report.
"""

import logging
from datetime import datetime
from typing import Any, Callable, Dict, List, NamedTuple, Optional, Tuple

from sqlalchemy.orm import Session

from models import (
    CodeDeliveryStatus, EscrowStatus, PaymentStatus, Project, RepositoryTransfer,
    Transaction, TransferMethod, TransferStatus, User
)
from services.escrow_release_policy import EscrowReleasePolicy
from services.github_service import (
    RepositoryRef, github_service, is_valid_github_username, parse_github_url
)
from services.notification_service import NotificationEvent, notification_service
from services.transaction_timeline import TimelineData, build_timeline
from utils.atomic_transactions import (
    atomic_transaction, lock_repository_transfer, locked_transaction_operation
)
from utils.datetime_helpers import get_naive_utc_now, to_iso
from utils.marketplace_errors import ConcurrentModificationError, NotFoundError, ValidationError
from utils.party_guard import require_buyer, require_participant, require_seller
from utils.token_encryption import token_encryption
from utils.transfer_state_validator import TransferStateValidator

logger = logging.getLogger(__name__)

# (user_id, event_type, payload) queued during a transition, sent after commit
PendingNotification = Tuple[int, str, Dict[str, Any]]


class TransferResult(NamedTuple):
    """Outcome of a transfer operation"""
    success: bool
    transfer: Optional[RepositoryTransfer]
    skipped: bool = False
    reason: Optional[str] = None
    escrow_released: bool = False

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"success": self.success, "skipped": self.skipped}
        if self.reason:
            data["reason"] = self.reason
        if self.transfer is not None:
            data["transfer_status"] = self.transfer.status
        data["escrow_released"] = self.escrow_released
        return data


class CodeAccessResult(NamedTuple):
    success: bool
    code_delivery_status: str
    code_accessed_at: Optional[datetime]
    skipped: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "skipped": self.skipped,
            "code_delivery_status": self.code_delivery_status,
            "code_accessed_at": to_iso(self.code_accessed_at),
        }


class _HandoverPlan(NamedTuple):
    transaction_id: str
    ref: RepositoryRef
    new_owner: str
    seller_token: str
    release_escrow: bool
    early_release: bool


class RepositoryTransferService:
    """Seller- and buyer-driven transitions of a RepositoryTransfer"""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        github=None,
        notifier=None,
        token_cipher=None,
        clock: Callable[[], datetime] = get_naive_utc_now,
    ):
        self._session_factory = session_factory
        self._github = github or github_service
        self._notifier = notifier or notification_service
        self._tokens = token_cipher or token_encryption
        self._clock = clock

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _dispatch(self, notifications: List[PendingNotification]) -> None:
        for user_id, event_type, payload in notifications:
            await self._notifier.notify(user_id, event_type, payload)

    def _seller_token(self, session: Session, seller_id: int) -> str:
        seller = session.get(User, seller_id)
        if seller is None or not seller.github_access_token_encrypted:
            raise ValidationError(
                f"Seller {seller_id} has no stored GitHub token",
                "Seller GitHub account not connected",
            )
        return self._tokens.decrypt(seller.github_access_token_encrypted)

    @staticmethod
    def _repository_ref(project: Project) -> RepositoryRef:
        ref = parse_github_url(project.github_url)
        if ref is None:
            raise ValidationError(
                f"Project {project.id} GitHub URL does not parse: {project.github_url!r}",
                "The project's GitHub URL is invalid",
            )
        return ref

    @staticmethod
    def _require_payment(transaction: Transaction) -> None:
        if transaction.payment_status != PaymentStatus.SUCCEEDED.value:
            raise ValidationError(
                f"Transaction {transaction.id} payment is {transaction.payment_status}",
                "Payment has not been completed for this transaction",
            )

    @staticmethod
    def _require_repository(project: Project) -> None:
        if not project.has_repository:
            raise ValidationError(
                f"Project {project.id} has no GitHub repository",
                "This project has no GitHub repository to transfer",
            )

    def _get_or_create_transfer(
        self, session: Session, transaction: Transaction, method: TransferMethod = TransferMethod.AUTOMATIC
    ) -> RepositoryTransfer:
        transfer = lock_repository_transfer(session, transaction.id)
        if transfer is not None:
            return transfer

        ref = parse_github_url(transaction.project.github_url)
        seller = session.get(User, transaction.seller_id)
        transfer = RepositoryTransfer(
            transaction_id=transaction.id,
            github_repo_full_name=ref.full_name if ref else None,
            method=method.value,
            status=TransferStatus.NOT_STARTED.value,
            seller_github_username=seller.github_username if seller else None,
        )
        session.add(transfer)
        session.flush()
        logger.info(f"🆕 TRANSFER_CREATED: transaction {transaction.id} ({method.value})")
        return transfer

    async def _send_invitation(
        self, session: Session, transaction: Transaction, transfer: RepositoryTransfer, now: datetime
    ) -> None:
        """Invite the buyer and move to INVITATION_SENT; a provider error aborts the caller's transaction"""
        ref = self._repository_ref(transaction.project)
        seller_token = self._seller_token(session, transaction.seller_id)

        await self._github.send_collaborator_invite(
            ref.owner, ref.repo, transfer.buyer_github_username, seller_token
        )

        TransferStateValidator.validate_and_transition(transfer, TransferStatus.INVITATION_SENT)
        transfer.github_repo_full_name = ref.full_name
        transfer.invitation_sent_at = now
        transaction.code_delivery_status = CodeDeliveryStatus.DELIVERED.value
        logger.info(
            f"📨 INVITATION_SENT: transaction {transaction.id} buyer @{transfer.buyer_github_username} "
            f"-> {ref.full_name}"
        )

    # ------------------------------------------------------------------
    # Seller / buyer operations
    # ------------------------------------------------------------------

    async def initiate_transfer(
        self,
        caller_id: int,
        transaction_id: str,
        method: TransferMethod = TransferMethod.AUTOMATIC,
    ) -> TransferResult:
        """
        Seller starts the repository handover.

        Sends the collaborator invitation straight away when the buyer's GitHub
        username is known; otherwise records the intent and asks the buyer for
        it. Calling again once the invitation is out is a skipped no-op.
        """
        notifications: List[PendingNotification] = []
        now = self._clock()

        with atomic_transaction(self._session_factory) as session:
            with locked_transaction_operation(transaction_id, session) as transaction:
                require_seller(transaction, caller_id, "start the repository transfer")
                self._require_payment(transaction)
                if transaction.escrow_status == EscrowStatus.REFUNDED.value:
                    raise ValidationError("Transaction has been refunded")
                project = transaction.project
                self._require_repository(project)

                transfer = self._get_or_create_transfer(session, transaction, method)
                status = TransferStatus(transfer.status)

                if status == TransferStatus.FAILED:
                    raise ValidationError(
                        f"Transfer for {transaction.id} has failed",
                        transfer.error_message or "Repository transfer has failed",
                    )
                if status != TransferStatus.NOT_STARTED:
                    logger.info(f"⏭️ TRANSFER_INITIATE_SKIPPED: {transaction.id} already {status.value}")
                    return TransferResult(True, transfer, skipped=True,
                                          reason="Repository transfer already initiated")
                if transfer.initiated_at is not None:
                    reason = "Repository transfer already initiated"
                    if not transfer.is_manual and not transfer.buyer_github_username:
                        reason = "Waiting for the buyer to connect a GitHub account"
                    return TransferResult(True, transfer, skipped=True, reason=reason)

                transfer.method = method.value
                transfer.initiated_at = now
                payload = {"transaction_id": transaction.id, "project_title": project.title}

                if method == TransferMethod.MANUAL:
                    reason = "Seller will hand the repository over manually"
                    notifications.append((transaction.buyer_id, NotificationEvent.REPO_TRANSFER_INITIATED, payload))
                elif transfer.buyer_github_username:
                    await self._send_invitation(session, transaction, transfer, now)
                    reason = "Collaborator invitation sent"
                    notifications.append((transaction.buyer_id, NotificationEvent.COLLABORATOR_INVITE_SENT, {
                        **payload, "repo_full_name": transfer.github_repo_full_name,
                    }))
                else:
                    reason = "Waiting for the buyer to connect a GitHub account"
                    notifications.append((transaction.buyer_id, NotificationEvent.GITHUB_USERNAME_REQUIRED, payload))

                session.flush()
                logger.info(f"🚀 TRANSFER_INITIATED: {transaction.id} by seller {caller_id} ({transfer.status})")
                result = TransferResult(True, transfer, reason=reason)

        await self._dispatch(notifications)
        return result

    async def set_buyer_github_username(self, caller_id: int, transaction_id: str, username: str) -> TransferResult:
        """Buyer supplies the GitHub login to invite; sends the invitation if the seller is already waiting"""
        notifications: List[PendingNotification] = []
        now = self._clock()

        with atomic_transaction(self._session_factory) as session:
            with locked_transaction_operation(transaction_id, session) as transaction:
                require_buyer(transaction, caller_id, "set the GitHub username")

                cleaned = (username or "").strip().lstrip("@")
                if not cleaned:
                    raise ValidationError("GitHub username is required")
                if not is_valid_github_username(cleaned):
                    raise ValidationError(f"Invalid GitHub username: {cleaned!r}", "Invalid GitHub username")
                self._require_payment(transaction)
                self._require_repository(transaction.project)

                transfer = self._get_or_create_transfer(session, transaction)
                status = TransferStatus(transfer.status)
                same_username = (transfer.buyer_github_username or "").lower() == cleaned.lower()

                if status != TransferStatus.NOT_STARTED:
                    if same_username:
                        return TransferResult(True, transfer, skipped=True, reason="GitHub username already saved")
                    raise ValidationError(
                        f"Transfer {transfer.id} is {status.value}; username change rejected",
                        f"The invitation was already sent to @{transfer.buyer_github_username}",
                    )

                ready_to_invite = transfer.initiated_at is not None and not transfer.is_manual
                if same_username and not ready_to_invite:
                    return TransferResult(True, transfer, skipped=True, reason="GitHub username already saved")

                transfer.buyer_github_username = cleaned
                reason = "GitHub username saved"
                if ready_to_invite:
                    await self._send_invitation(session, transaction, transfer, now)
                    reason = "Collaborator invitation sent"
                    notifications.append((transaction.seller_id, NotificationEvent.COLLABORATOR_INVITE_SENT, {
                        "transaction_id": transaction.id, "buyer_github_username": cleaned,
                    }))
                else:
                    notifications.append((transaction.seller_id, NotificationEvent.BUYER_GITHUB_CONNECTED, {
                        "transaction_id": transaction.id, "buyer_github_username": cleaned,
                    }))

                session.flush()
                logger.info(f"👤 BUYER_GITHUB_SET: {transaction.id} @{cleaned} ({transfer.status})")
                result = TransferResult(True, transfer, reason=reason)

        await self._dispatch(notifications)
        return result

    async def confirm_transfer(self, caller_id: int, transaction_id: str) -> TransferResult:
        """Buyer confirms repository access; escrow is not touched"""
        now = self._clock()

        with atomic_transaction(self._session_factory) as session:
            with locked_transaction_operation(transaction_id, session) as transaction:
                require_buyer(transaction, caller_id, "confirm repository access")
                transfer = lock_repository_transfer(session, transaction.id)
                if transfer is None:
                    raise NotFoundError(f"No transfer for transaction {transaction.id}",
                                        "Repository transfer not found")

                status = TransferStatus(transfer.status)
                if status == TransferStatus.COLLABORATOR_ADDED:
                    return TransferResult(True, transfer, skipped=True, reason="Access already confirmed")
                if status != TransferStatus.INVITATION_SENT:
                    raise ValidationError(
                        f"Cannot confirm transfer {transfer.id} in status {status.value}",
                        "Repository access can only be confirmed after the invitation is sent",
                    )

                TransferStateValidator.validate_and_transition(transfer, TransferStatus.COLLABORATOR_ADDED)
                transfer.accepted_at = now
                transaction.code_delivery_status = CodeDeliveryStatus.ACCESSED.value
                transaction.code_accessed_at = transaction.code_accessed_at or now
                transaction.github_access_granted_at = now
                session.flush()
                logger.info(f"🔓 ACCESS_CONFIRMED: {transaction.id} by buyer {caller_id}")
                result = TransferResult(True, transfer, reason="Repository access confirmed")

        await self._notifier.notify(transaction.seller_id, NotificationEvent.REPO_ACCESS_CONFIRMED, {
            "transaction_id": transaction.id, "repo_full_name": transfer.github_repo_full_name,
        })
        return result

    async def mark_code_accessed(self, caller_id: int, transaction_id: str) -> CodeAccessResult:
        """Buyer records that they opened the delivered code; works with or without a repository"""
        now = self._clock()

        with atomic_transaction(self._session_factory) as session:
            with locked_transaction_operation(transaction_id, session) as transaction:
                require_buyer(transaction, caller_id, "access the code")
                self._require_payment(transaction)

                if transaction.code_delivery_status == CodeDeliveryStatus.ACCESSED.value:
                    return CodeAccessResult(True, transaction.code_delivery_status,
                                            transaction.code_accessed_at, skipped=True)

                transaction.code_delivery_status = CodeDeliveryStatus.ACCESSED.value
                transaction.code_accessed_at = now
                session.flush()
                logger.info(f"📂 CODE_ACCESSED: {transaction.id} by buyer {caller_id}")
                return CodeAccessResult(True, transaction.code_delivery_status, transaction.code_accessed_at)

    async def transfer_ownership(self, transaction_id: str, caller_seller_id: int) -> TransferResult:
        """
        Seller transfers repository ownership.

        Before the review period ends the escrow stays held; afterwards the
        ownership transfer and the escrow release commit together.
        """
        return await self._handover(transaction_id, caller_seller_id, early_release=False)

    async def seller_early_release(self, transaction_id: str, caller_seller_id: int) -> TransferResult:
        """Seller ends the review period now: ownership transfer plus escrow release"""
        return await self._handover(transaction_id, caller_seller_id, early_release=True)

    # ------------------------------------------------------------------
    # Ownership handover
    # ------------------------------------------------------------------

    async def _handover(self, transaction_id: str, caller_id: int, early_release: bool) -> TransferResult:
        action = "release escrow early" if early_release else "transfer repository ownership"
        outcome, plan = self._begin_handover(transaction_id, caller_id, early_release, action)
        if outcome is not None:
            if outcome.success and not outcome.skipped:
                await self._notify_handover(transaction_id, outcome)
            return outcome

        try:
            await self._github.transfer_repository_ownership(
                plan.ref.owner, plan.ref.repo, plan.new_owner, plan.seller_token
            )
        except Exception as e:
            logger.error(f"❌ OWNERSHIP_TRANSFER_FAILED: {transaction_id}: {e}")
            self._abort_handover(transaction_id)
            raise

        outcome = self._settle_handover(plan)
        await self._notify_handover(transaction_id, outcome)
        return outcome

    def _begin_handover(
        self, transaction_id: str, caller_id: int, early_release: bool, action: str
    ) -> Tuple[Optional[TransferResult], Optional[_HandoverPlan]]:
        """
        Validate and either finish locally or write the handover marker.

        Returns (result, None) when no provider call is needed, or
        (None, plan) once the marker is committed.
        """
        now = self._clock()
        with atomic_transaction(self._session_factory) as session:
            with locked_transaction_operation(transaction_id, session) as transaction:
                require_seller(transaction, caller_id, action)
                self._require_payment(transaction)
                project = transaction.project
                transfer = lock_repository_transfer(session, transaction.id)

                escrow_status = EscrowStatus(transaction.escrow_status)
                if escrow_status == EscrowStatus.RELEASED:
                    reason = "Escrow already released"
                    if transfer is not None and transfer.status == TransferStatus.COMPLETED.value:
                        reason = "Ownership already transferred"
                    return TransferResult(False, transfer, skipped=True, reason=reason), None
                if escrow_status == EscrowStatus.REFUNDED:
                    raise ValidationError("Transaction has been refunded")
                if escrow_status == EscrowStatus.DISPUTED:
                    raise ValidationError("Transaction is under dispute. An administrator must resolve it first")

                review_elapsed = (
                    transaction.escrow_release_date is not None and now >= transaction.escrow_release_date
                )
                release_escrow = early_release or review_elapsed

                if not project.has_repository:
                    if not early_release:
                        self._require_repository(project)
                    EscrowReleasePolicy.apply_release(transaction, now, early=True)
                    return TransferResult(True, None, reason="Escrow released early", escrow_released=True), None

                if transfer is None:
                    raise ValidationError(
                        f"No transfer for transaction {transaction.id}",
                        "Repository transfer has not been started",
                    )

                status = TransferStatus(transfer.status)
                if status == TransferStatus.FAILED:
                    raise ValidationError(f"Transfer {transfer.id} failed",
                                          transfer.error_message or "Repository transfer has failed")
                if status == TransferStatus.OWNERSHIP_TRANSFERRED:
                    raise ValidationError(f"Transfer {transfer.id} handover in flight",
                                          "Ownership transfer already in progress")
                if status == TransferStatus.COMPLETED:
                    if not early_release:
                        return TransferResult(False, transfer, skipped=True,
                                              reason="Ownership already transferred"), None
                    EscrowReleasePolicy.apply_release(transaction, now, early=True)
                    return TransferResult(True, transfer, reason="Escrow released early",
                                          escrow_released=True), None

                if transfer.is_manual:
                    if transfer.initiated_at is None:
                        raise ValidationError("Repository transfer has not been started")
                    TransferStateValidator.validate_and_transition(transfer, TransferStatus.OWNERSHIP_TRANSFERRED)
                    TransferStateValidator.validate_and_transition(transfer, TransferStatus.COMPLETED)
                    transfer.completed_at = now
                    if release_escrow:
                        EscrowReleasePolicy.apply_release(transaction, now, early=early_release)
                    logger.info(f"🤝 MANUAL_HANDOVER_RECORDED: {transaction.id}")
                    return TransferResult(True, transfer, reason="Manual handover recorded",
                                          escrow_released=release_escrow), None

                if status not in (TransferStatus.INVITATION_SENT, TransferStatus.COLLABORATOR_ADDED) \
                        or not transfer.buyer_github_username:
                    raise ValidationError(
                        f"Transfer {transfer.id} is {status.value}",
                        "The buyer has not been invited to the repository yet",
                    )

                ref = self._repository_ref(project)
                seller_token = self._seller_token(session, transaction.seller_id)

                transfer.status_before_handover = status.value
                TransferStateValidator.validate_and_transition(transfer, TransferStatus.OWNERSHIP_TRANSFERRED)
                transfer.ownership_requested_at = now
                logger.info(
                    f"🔐 HANDOVER_STARTED: {transaction.id} {ref.full_name} -> @{transfer.buyer_github_username} "
                    f"(release_escrow={release_escrow})"
                )
                plan = _HandoverPlan(
                    transaction_id=transaction.id,
                    ref=ref,
                    new_owner=transfer.buyer_github_username,
                    seller_token=seller_token,
                    release_escrow=release_escrow,
                    early_release=early_release,
                )
        return None, plan

    def _abort_handover(self, transaction_id: str) -> None:
        """Put the transfer back where it was after the provider refused"""
        try:
            with atomic_transaction(self._session_factory) as session:
                transfer = lock_repository_transfer(session, transaction_id)
                if transfer is not None and transfer.status == TransferStatus.OWNERSHIP_TRANSFERRED.value:
                    TransferStateValidator.restore_after_failed_handover(transfer)
        except Exception as e:
            # Marker stays; the reconciliation monitor reports it
            logger.critical(f"🚨 HANDOVER_RESTORE_FAILED: {transaction_id}: {e}", exc_info=True)

    def _settle_handover(self, plan: _HandoverPlan) -> TransferResult:
        """Commit transfer COMPLETED and, when due, escrow RELEASED in one transaction"""
        now = self._clock()
        try:
            with atomic_transaction(self._session_factory) as session:
                with locked_transaction_operation(plan.transaction_id, session) as transaction:
                    transfer = lock_repository_transfer(session, plan.transaction_id)
                    if transfer is None or transfer.status != TransferStatus.OWNERSHIP_TRANSFERRED.value:
                        raise ConcurrentModificationError(
                            f"Transfer for {plan.transaction_id} left the handover state before settling"
                        )

                    TransferStateValidator.validate_and_transition(transfer, TransferStatus.COMPLETED)
                    transfer.completed_at = now
                    transfer.ownership_requested_at = None
                    transfer.status_before_handover = None

                    if plan.release_escrow:
                        EscrowReleasePolicy.apply_release(transaction, now, early=plan.early_release)
                    session.flush()
        except Exception as e:
            logger.critical(
                f"🚨 HANDOVER_SETTLE_FAILED: {plan.transaction_id} ownership moved at the provider "
                f"but local state did not commit: {e}",
                exc_info=True,
            )
            raise

        logger.info(
            f"🏁 HANDOVER_COMPLETED: {plan.transaction_id} escrow "
            f"{'released' if plan.release_escrow else 'held until review period ends'}"
        )
        return TransferResult(True, transfer, escrow_released=plan.release_escrow,
                              reason="Ownership transferred")

    async def _notify_handover(self, transaction_id: str, outcome: TransferResult) -> None:
        with atomic_transaction(self._session_factory) as session:
            transaction = session.get(Transaction, transaction_id)
            buyer_id, seller_id = transaction.buyer_id, transaction.seller_id
            payout = transaction.seller_receives_cents

        payload = {"transaction_id": transaction_id}
        if outcome.transfer is not None and outcome.transfer.status == TransferStatus.COMPLETED.value:
            await self._notifier.notify(buyer_id, NotificationEvent.OWNERSHIP_TRANSFERRED, {
                **payload, "repo_full_name": outcome.transfer.github_repo_full_name,
            })
        if outcome.escrow_released:
            await self._notifier.notify(seller_id, NotificationEvent.ESCROW_RELEASED, {
                **payload, "amount_cents": payout,
            })

    # ------------------------------------------------------------------
    # Read side
    # ------------------------------------------------------------------

    def get_timeline_data(self, transaction_id: str, caller_id: int) -> TimelineData:
        """Derive the stage list for a buyer or seller; never writes"""
        with atomic_transaction(self._session_factory) as session:
            transaction = session.get(Transaction, transaction_id)
            if transaction is None:
                raise NotFoundError(f"Transaction {transaction_id} not found", "Transaction not found")
            role = require_participant(transaction, caller_id)
            transfer = (
                session.query(RepositoryTransfer)
                .filter(RepositoryTransfer.transaction_id == transaction.id)
                .first()
            )
            return build_timeline(transaction, transaction.project, transfer, self._clock(), role)


repository_transfer_service = RepositoryTransferService()

"""
Transaction Timeline
====================

Derives the six-stage progress view of a transaction:

    Offer Accepted -> Payment Received -> Collaborator Access
        -> Project Review -> Trade Review -> Ownership Transfer

Stages are never stored. ``build_timeline`` is a pure function of the
transaction, its project, its repository transfer (if any), the viewer's role
and the current time, so it can be recomputed on every request.
"""

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, List, Optional

from config import Config
from models import EscrowStatus, PaymentStatus, TransferStatus
from utils.datetime_helpers import to_iso
from utils.party_guard import PartyRole
from utils.transfer_state_validator import TransferStateValidator


class StageName(Enum):
    OFFER_ACCEPTED = "Offer Accepted"
    PAYMENT_RECEIVED = "Payment Received"
    COLLABORATOR_ACCESS = "Collaborator Access"
    PROJECT_REVIEW = "Project Review"
    TRADE_REVIEW = "Trade Review"
    OWNERSHIP_TRANSFER = "Ownership Transfer"


STAGE_ORDER = [
    StageName.OFFER_ACCEPTED,
    StageName.PAYMENT_RECEIVED,
    StageName.COLLABORATOR_ACCESS,
    StageName.PROJECT_REVIEW,
    StageName.TRADE_REVIEW,
    StageName.OWNERSHIP_TRANSFER,
]


class StageStatus(Enum):
    UPCOMING = "upcoming"
    ACTIVE = "active"
    COMPLETED = "completed"
    SKIPPED = "skipped"
    FAILED = "failed"


class ActionType(Enum):
    PRIMARY = "primary"
    SECONDARY = "secondary"
    LINK = "link"


@dataclass
class TimelineAction:
    label: str
    type: ActionType
    api_endpoint: Optional[str] = None
    method: Optional[str] = None
    url: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {"label": self.label, "type": self.type.value}
        if self.api_endpoint:
            data["api_endpoint"] = self.api_endpoint
            data["method"] = self.method
        if self.url:
            data["url"] = self.url
        return data


@dataclass
class TimelineStage:
    name: StageName
    status: StageStatus
    description: str
    actions: List[TimelineAction] = field(default_factory=list)
    metadata: Dict[str, Any] = field(default_factory=dict)
    completed_at: Optional[datetime] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name.value,
            "status": self.status.value,
            "description": self.description,
            "actions": [action.to_dict() for action in self.actions],
            "metadata": self.metadata,
            "completed_at": to_iso(self.completed_at),
        }


@dataclass
class TimelineData:
    transaction_id: str
    viewer_role: PartyRole
    stages: List[TimelineStage]
    payment_status: str
    escrow_status: str
    transfer_status: Optional[str]
    generated_at: datetime

    def stage(self, name: StageName) -> TimelineStage:
        return next(s for s in self.stages if s.name == name)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "viewer_role": self.viewer_role.value,
            "payment_status": self.payment_status,
            "escrow_status": self.escrow_status,
            "transfer_status": self.transfer_status,
            "generated_at": to_iso(self.generated_at),
            "stages": [stage.to_dict() for stage in self.stages],
        }


def review_days_remaining(release_date: Optional[datetime], now: datetime) -> int:
    """Days until the escrow release date, partial days rounded up, never negative"""
    if release_date is None:
        return Config.REVIEW_PERIOD_DAYS
    remaining = release_date - now
    if remaining <= timedelta(0):
        return 0
    return math.ceil(remaining / timedelta(days=1))


def _endpoint(transaction_id: str, action: str) -> str:
    return f"/api/transactions/{transaction_id}/{action}"


def _repo_metadata(transfer) -> Dict[str, Any]:
    if transfer is None:
        return {}
    return {
        "repo_full_name": transfer.github_repo_full_name,
        "buyer_github_username": transfer.buyer_github_username,
        "transfer_method": transfer.method,
    }


def _buyer_has_repo_access(transfer) -> bool:
    if transfer is None:
        return False
    if transfer.is_manual:
        return True
    return TransferStateValidator.has_buyer_access(TransferStatus(transfer.status))


# ============================================================================
# STAGE BUILDERS
# ============================================================================

def _offer_accepted_stage(transaction) -> TimelineStage:
    return TimelineStage(
        name=StageName.OFFER_ACCEPTED,
        status=StageStatus.COMPLETED,
        description=f"Purchase agreed at ${transaction.amount_cents / 100:,.2f}",
        metadata={"amount_cents": transaction.amount_cents},
        completed_at=transaction.created_at,
    )


def _payment_received_stage(transaction) -> TimelineStage:
    payment_status = PaymentStatus(transaction.payment_status)
    if payment_status == PaymentStatus.PENDING:
        return TimelineStage(StageName.PAYMENT_RECEIVED, StageStatus.ACTIVE,
                             "Waiting for payment confirmation")
    if payment_status == PaymentStatus.FAILED:
        return TimelineStage(StageName.PAYMENT_RECEIVED, StageStatus.FAILED,
                             "Payment failed")

    description = "Payment received and held in escrow"
    if payment_status == PaymentStatus.REFUNDED:
        description = "Payment received and later refunded to the buyer"
    return TimelineStage(
        name=StageName.PAYMENT_RECEIVED,
        status=StageStatus.COMPLETED,
        description=description,
        metadata={
            "commission_cents": transaction.commission_cents,
            "seller_receives_cents": transaction.seller_receives_cents,
        },
        completed_at=transaction.payment_succeeded_at,
    )


def _collaborator_access_stage(transaction, project, transfer, role: PartyRole) -> TimelineStage:
    name = StageName.COLLABORATOR_ACCESS
    if not project.has_repository:
        return TimelineStage(name, StageStatus.SKIPPED,
                             "This project is delivered without a GitHub repository")
    if transfer is not None and transfer.is_manual:
        return TimelineStage(name, StageStatus.SKIPPED,
                             "The seller is handing the repository over manually",
                             metadata=_repo_metadata(transfer))

    payment_status = PaymentStatus(transaction.payment_status)
    if payment_status in (PaymentStatus.PENDING, PaymentStatus.FAILED):
        return TimelineStage(name, StageStatus.UPCOMING,
                             "Repository access is granted after payment")

    metadata = _repo_metadata(transfer)
    if _buyer_has_repo_access(transfer):
        return TimelineStage(
            name, StageStatus.COMPLETED,
            f"Buyer has access to {transfer.github_repo_full_name}",
            metadata=metadata,
            completed_at=transfer.accepted_at or transfer.invitation_sent_at,
        )
    if transfer is not None and transfer.status == TransferStatus.FAILED.value:
        return TimelineStage(name, StageStatus.FAILED,
                             transfer.error_message or "Repository transfer failed",
                             metadata=metadata)
    if EscrowStatus(transaction.escrow_status) == EscrowStatus.REFUNDED:
        return TimelineStage(name, StageStatus.FAILED,
                             "Cancelled because the transaction was refunded")

    actions: List[TimelineAction] = []
    if transfer is not None and transfer.status == TransferStatus.INVITATION_SENT.value:
        metadata["invitation_sent_at"] = to_iso(transfer.invitation_sent_at)
        metadata["poll_interval_seconds"] = Config.COLLABORATOR_POLL_INTERVAL_SECONDS
        if role == PartyRole.BUYER:
            actions.append(TimelineAction(
                "Accept Invitation", ActionType.LINK,
                url=f"https://github.com/{transfer.github_repo_full_name}/invitations",
            ))
            actions.append(TimelineAction(
                "I Have Access", ActionType.PRIMARY,
                api_endpoint=_endpoint(transaction.id, "confirm-transfer"), method="POST",
            ))
        return TimelineStage(
            name, StageStatus.ACTIVE,
            f"Invitation sent to @{transfer.buyer_github_username}. Waiting for the buyer to accept",
            actions=actions, metadata=metadata,
        )

    username_known = transfer is not None and bool(transfer.buyer_github_username)
    initiated = transfer is not None and transfer.initiated_at is not None

    if not username_known:
        description = "Waiting for the buyer to connect a GitHub account"
        if role == PartyRole.BUYER:
            actions.append(TimelineAction(
                "Connect GitHub Account", ActionType.PRIMARY,
                api_endpoint=_endpoint(transaction.id, "buyer-github"), method="PUT",
            ))
    elif not initiated:
        description = "Waiting for the seller to send the collaborator invitation"
    else:
        description = "Collaborator invitation is being prepared"

    if role == PartyRole.SELLER and not initiated:
        actions.append(TimelineAction(
            "Send Invitation", ActionType.PRIMARY,
            api_endpoint=_endpoint(transaction.id, "repository-transfer"), method="POST",
        ))

    return TimelineStage(name, StageStatus.ACTIVE, description, actions=actions, metadata=metadata)


def _project_review_stage(transaction, transfer, access_stage: TimelineStage,
                          now: datetime, role: PartyRole) -> TimelineStage:
    name = StageName.PROJECT_REVIEW
    payment_status = PaymentStatus(transaction.payment_status)
    escrow_status = EscrowStatus(transaction.escrow_status)

    if payment_status in (PaymentStatus.PENDING, PaymentStatus.FAILED):
        return TimelineStage(name, StageStatus.UPCOMING, "The review period starts after payment")
    if escrow_status == EscrowStatus.REFUNDED:
        return TimelineStage(name, StageStatus.FAILED, "Transaction refunded")
    if escrow_status == EscrowStatus.RELEASED:
        description = "Review period complete"
        if transaction.early_released_at is not None:
            description = "Review period ended early by the seller"
        return TimelineStage(name, StageStatus.COMPLETED, description,
                             completed_at=transaction.released_to_seller_at)
    if access_stage.status not in (StageStatus.COMPLETED, StageStatus.SKIPPED):
        return TimelineStage(name, StageStatus.UPCOMING,
                             "Starts once the buyer has access to the code")

    review_ends_at = transaction.escrow_release_date
    days_remaining = review_days_remaining(review_ends_at, now)
    metadata = {
        "days_remaining": days_remaining,
        "review_started_at": to_iso(transaction.payment_succeeded_at),
        "review_ends_at": to_iso(review_ends_at),
        "escrow_release_date": to_iso(transaction.escrow_release_date),
    }

    if escrow_status == EscrowStatus.DISPUTED:
        return TimelineStage(name, StageStatus.ACTIVE,
                             "Funds are on hold while an administrator reviews a dispute",
                             metadata=metadata)
    if days_remaining == 0:
        return TimelineStage(name, StageStatus.COMPLETED, "Review period complete",
                             metadata=metadata, completed_at=review_ends_at)

    actions: List[TimelineAction] = []
    if role == PartyRole.SELLER:
        actions.append(TimelineAction(
            "Release Early", ActionType.SECONDARY,
            api_endpoint=_endpoint(transaction.id, "early-release"), method="POST",
        ))
    plural = "day" if days_remaining == 1 else "days"
    return TimelineStage(name, StageStatus.ACTIVE,
                         f"{days_remaining} {plural} left to review the code",
                         actions=actions, metadata=metadata)


def _trade_review_stage(transaction, review_stage: TimelineStage, role: PartyRole) -> TimelineStage:
    name = StageName.TRADE_REVIEW
    if transaction.reviewed_at is not None:
        return TimelineStage(name, StageStatus.COMPLETED, "The buyer reviewed this trade",
                             completed_at=transaction.reviewed_at)
    if EscrowStatus(transaction.escrow_status) == EscrowStatus.REFUNDED:
        return TimelineStage(name, StageStatus.SKIPPED, "No review for a refunded transaction")
    if review_stage.status not in (StageStatus.ACTIVE, StageStatus.COMPLETED):
        return TimelineStage(name, StageStatus.UPCOMING, "Rate the trade once you've seen the code")

    actions: List[TimelineAction] = []
    if role == PartyRole.BUYER:
        actions.append(TimelineAction(
            "Leave Review", ActionType.LINK,
            url=f"{Config.APP_BASE_URL}/transactions/{transaction.id}/review",
        ))
    return TimelineStage(name, StageStatus.ACTIVE, "Share your experience with this seller",
                         actions=actions)


def _ownership_transfer_stage(transaction, project, transfer, now: datetime,
                              role: PartyRole) -> TimelineStage:
    name = StageName.OWNERSHIP_TRANSFER
    if not project.has_repository:
        return TimelineStage(name, StageStatus.SKIPPED,
                             "No repository to transfer for this project")

    escrow_status = EscrowStatus(transaction.escrow_status)
    metadata = _repo_metadata(transfer)
    metadata["escrow_release_date"] = to_iso(transaction.escrow_release_date)
    transfer_status = TransferStatus(transfer.status) if transfer is not None else None

    if escrow_status == EscrowStatus.REFUNDED:
        return TimelineStage(name, StageStatus.FAILED,
                             "Transaction refunded. Ownership will not be transferred",
                             metadata=metadata)
    if escrow_status == EscrowStatus.RELEASED:
        description = "Ownership transferred and funds released to the seller"
        if transfer_status != TransferStatus.COMPLETED:
            description = "Funds released to the seller by an administrator"
        return TimelineStage(name, StageStatus.COMPLETED, description, metadata=metadata,
                             completed_at=transaction.released_to_seller_at)
    if transfer_status == TransferStatus.COMPLETED:
        return TimelineStage(name, StageStatus.ACTIVE,
                             "Ownership transferred. Funds release when the review period ends",
                             metadata=metadata)
    if transfer_status == TransferStatus.OWNERSHIP_TRANSFERRED:
        return TimelineStage(name, StageStatus.ACTIVE, "Ownership transfer in progress",
                             metadata=metadata)
    if transfer_status == TransferStatus.FAILED:
        return TimelineStage(name, StageStatus.FAILED,
                             transfer.error_message or "Repository transfer failed",
                             metadata=metadata)
    if escrow_status == EscrowStatus.DISPUTED:
        return TimelineStage(name, StageStatus.UPCOMING,
                             "On hold while an administrator reviews a dispute",
                             metadata=metadata)

    review_elapsed = (
        transaction.escrow_release_date is not None and now >= transaction.escrow_release_date
    )
    can_transfer = _buyer_has_repo_access(transfer)
    actions: List[TimelineAction] = []

    if review_elapsed and can_transfer:
        if role == PartyRole.SELLER:
            actions.append(TimelineAction(
                "Transfer Now", ActionType.PRIMARY,
                api_endpoint=_endpoint(transaction.id, "transfer-ownership"), method="POST",
            ))
        return TimelineStage(name, StageStatus.ACTIVE,
                             "Review period is over. Transfer ownership to release the funds",
                             actions=actions, metadata=metadata)

    if can_transfer and role == PartyRole.SELLER:
        actions.append(TimelineAction(
            "Transfer Early", ActionType.SECONDARY,
            api_endpoint=_endpoint(transaction.id, "transfer-ownership"), method="POST",
        ))
    return TimelineStage(name, StageStatus.UPCOMING,
                         "Ownership moves to the buyer after the review period",
                         actions=actions, metadata=metadata)


def build_timeline(transaction, project, transfer, now: datetime, role: PartyRole) -> TimelineData:
    """Derive the ordered stage list; reads its inputs and nothing else"""
    offer = _offer_accepted_stage(transaction)
    payment = _payment_received_stage(transaction)
    access = _collaborator_access_stage(transaction, project, transfer, role)
    review = _project_review_stage(transaction, transfer, access, now, role)
    trade_review = _trade_review_stage(transaction, review, role)
    ownership = _ownership_transfer_stage(transaction, project, transfer, now, role)

    return TimelineData(
        transaction_id=transaction.id,
        viewer_role=role,
        stages=[offer, payment, access, review, trade_review, ownership],
        payment_status=transaction.payment_status,
        escrow_status=transaction.escrow_status,
        transfer_status=transfer.status if transfer is not None else None,
        generated_at=now,
    )

"""
Code Marketplace Escrow Platform - Database Schema
==================================================

Schema for the escrow and repository-transfer lifecycle:
- Users (buyers, sellers, admins) with their encrypted GitHub credentials
- Project listings, optionally backed by a hosted GitHub repository
- Transactions with escrow-protected funds
- Repository transfers tied 1:1 to a transaction
- Notifications and admin audit trail
"""

import uuid
from enum import Enum
from sqlalchemy import (
    Column, Integer, String, DateTime, Boolean, Text,
    ForeignKey, Index, CheckConstraint, JSON
)
from sqlalchemy.orm import DeclarativeBase, relationship

from utils.datetime_helpers import get_naive_utc_now


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


def generate_transaction_id() -> str:
    return str(uuid.uuid4())


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class PaymentStatus(Enum):
    """Payment capture status reported by the processor"""
    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    REFUNDED = "refunded"


class EscrowStatus(Enum):
    """Where the buyer's funds currently sit"""
    HELD = "held"
    RELEASED = "released"
    REFUNDED = "refunded"
    DISPUTED = "disputed"


class CodeDeliveryStatus(Enum):
    PENDING = "pending"
    DELIVERED = "delivered"
    ACCESSED = "accessed"


class TransferStatus(Enum):
    """Repository handover lifecycle states"""
    NOT_STARTED = "not_started"
    INVITATION_SENT = "invitation_sent"
    COLLABORATOR_ADDED = "collaborator_added"
    OWNERSHIP_TRANSFERRED = "ownership_transferred"
    COMPLETED = "completed"
    FAILED = "failed"


class TransferMethod(Enum):
    AUTOMATIC = "automatic"
    MANUAL = "manual"


def _in_values(column: str, enum_cls) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


# ============================================================================
# MODELS
# ============================================================================

class User(Base):
    """Marketplace account; the same user may buy and sell"""
    __tablename__ = 'users'

    id = Column(Integer, primary_key=True, autoincrement=True)
    email = Column(String(255), unique=True, nullable=False)
    display_name = Column(String(255), nullable=True)

    # GitHub identity; the access token is AES-GCM ciphertext, never plaintext
    github_username = Column(String(39), nullable=True)
    github_access_token_encrypted = Column(Text, nullable=True)

    # Persisted role flag; admin checks never trust a client-supplied claim
    is_admin = Column(Boolean, default=False, nullable=False)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)


class Project(Base):
    """A listing for sale"""
    __tablename__ = 'projects'

    id = Column(Integer, primary_key=True, autoincrement=True)
    seller_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    title = Column(String(255), nullable=False)

    # NULL for listings delivered without a hosted repository
    github_url = Column(String(500), nullable=True)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    seller = relationship("User", foreign_keys=[seller_id])

    @property
    def has_repository(self) -> bool:
        return bool(self.github_url and self.github_url.strip())


class Transaction(Base):
    """One purchase of one listing by one buyer from one seller"""
    __tablename__ = 'transactions'

    id = Column(String(36), primary_key=True, default=generate_transaction_id)

    project_id = Column(Integer, ForeignKey('projects.id'), nullable=False, index=True)
    seller_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    buyer_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)

    # Money in minor currency units
    amount_cents = Column(Integer, nullable=False)
    commission_cents = Column(Integer, nullable=False)
    seller_receives_cents = Column(Integer, nullable=False)
    payment_reference = Column(String(255), nullable=True, unique=True)

    payment_status = Column(String(20), default=PaymentStatus.PENDING.value, nullable=False, index=True)
    escrow_status = Column(String(20), default=EscrowStatus.HELD.value, nullable=False, index=True)
    code_delivery_status = Column(String(20), default=CodeDeliveryStatus.PENDING.value, nullable=False)

    # Escrow timing; the release date is written once at payment success
    payment_succeeded_at = Column(DateTime, nullable=True)
    escrow_release_date = Column(DateTime, nullable=True, index=True)
    released_to_seller_at = Column(DateTime, nullable=True)
    refunded_at = Column(DateTime, nullable=True)
    early_released_at = Column(DateTime, nullable=True)

    # Dispute tracking
    disputed_at = Column(DateTime, nullable=True)
    dispute_reason = Column(Text, nullable=True)

    # Delivery tracking
    code_accessed_at = Column(DateTime, nullable=True)
    github_access_granted_at = Column(DateTime, nullable=True)

    # Written by the review system; read by the Trade Review stage
    reviewed_at = Column(DateTime, nullable=True)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    completed_at = Column(DateTime, nullable=True)

    version = Column(Integer, nullable=False, default=1)

    project = relationship("Project")
    repository_transfer = relationship(
        "RepositoryTransfer", back_populates="transaction", uselist=False
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(_in_values('payment_status', PaymentStatus), name='ck_transaction_payment_status_valid'),
        CheckConstraint(_in_values('escrow_status', EscrowStatus), name='ck_transaction_escrow_status_valid'),
        CheckConstraint(_in_values('code_delivery_status', CodeDeliveryStatus), name='ck_transaction_code_delivery_valid'),
        CheckConstraint('amount_cents > 0', name='ck_transaction_amount_positive'),
        CheckConstraint('commission_cents >= 0', name='ck_transaction_commission_non_negative'),
        CheckConstraint(
            'seller_receives_cents + commission_cents = amount_cents',
            name='ck_transaction_split_equals_amount'
        ),
        CheckConstraint('seller_id <> buyer_id', name='ck_transaction_distinct_parties'),
        Index('ix_transactions_escrow_release', 'escrow_status', 'escrow_release_date'),
    )


class RepositoryTransfer(Base):
    """One GitHub repository handover, 1:1 with a transaction"""
    __tablename__ = 'repository_transfers'

    id = Column(Integer, primary_key=True, autoincrement=True)
    transaction_id = Column(String(36), ForeignKey('transactions.id'), unique=True, nullable=False)

    github_repo_full_name = Column(String(255), nullable=True)
    method = Column(String(20), default=TransferMethod.AUTOMATIC.value, nullable=False)
    status = Column(String(30), default=TransferStatus.NOT_STARTED.value, nullable=False, index=True)

    seller_github_username = Column(String(39), nullable=True)
    buyer_github_username = Column(String(39), nullable=True)

    # Seller intent; set on the first initiate call
    initiated_at = Column(DateTime, nullable=True)
    invitation_sent_at = Column(DateTime, nullable=True)
    accepted_at = Column(DateTime, nullable=True)

    # Handover intent marker: set before the provider call, cleared on settle
    ownership_requested_at = Column(DateTime, nullable=True)
    status_before_handover = Column(String(30), nullable=True)

    completed_at = Column(DateTime, nullable=True)
    failed_at = Column(DateTime, nullable=True)
    error_message = Column(Text, nullable=True)

    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)
    updated_at = Column(DateTime, default=get_naive_utc_now, onupdate=get_naive_utc_now, nullable=False)

    version = Column(Integer, nullable=False, default=1)

    transaction = relationship("Transaction", back_populates="repository_transfer")

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(_in_values('status', TransferStatus), name='ck_repository_transfer_status_valid'),
        CheckConstraint(_in_values('method', TransferMethod), name='ck_repository_transfer_method_valid'),
    )

    @property
    def is_manual(self) -> bool:
        return self.method == TransferMethod.MANUAL.value


class Notification(Base):
    """In-app notification written by the notification sink"""
    __tablename__ = 'notifications'

    id = Column(Integer, primary_key=True, autoincrement=True)
    user_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    event_type = Column(String(64), nullable=False)
    payload = Column(JSON, nullable=True)
    read_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)


class AuditLog(Base):
    """Admin action audit trail"""
    __tablename__ = 'audit_logs'

    id = Column(Integer, primary_key=True, autoincrement=True)
    admin_id = Column(Integer, ForeignKey('users.id'), nullable=False, index=True)
    action = Column(String(64), nullable=False, index=True)
    target_type = Column(String(32), nullable=False)
    target_id = Column(String(64), nullable=False)
    details = Column(JSON, nullable=True)
    ip_address = Column(String(45), nullable=True)  # IPv6 compatible
    created_at = Column(DateTime, default=get_naive_utc_now, nullable=False)

    __table_args__ = (
        Index('ix_audit_logs_target', 'target_type', 'target_id'),
    )

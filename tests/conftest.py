"""
Shared fixtures for the escrow and repository-transfer test suites.

Key Components:
1. In-memory SQLite database with the full schema
2. Controllable clock for review-period timing
3. AsyncMock stand-ins for GitHub, Stripe and the notification sink
4. Seeded buyer, seller, admin and project rows plus a transaction factory
"""

import os
import uuid

# Config reads the environment at import time
os.environ.setdefault("DATABASE_URL", "sqlite://")
os.environ.setdefault("ENABLE_SCHEDULER", "false")
TEST_ENCRYPTION_KEY = "0f" * 32
os.environ.setdefault("GITHUB_TOKEN_ENCRYPTION_KEY", TEST_ENCRYPTION_KEY)

from datetime import datetime, timedelta
from typing import Optional
from unittest.mock import AsyncMock

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from models import (
    Base, CodeDeliveryStatus, EscrowStatus, PaymentStatus, Project, RepositoryTransfer,
    Transaction, TransferMethod, TransferStatus, User
)
from services.admin_escrow_service import AdminEscrowService
from services.collaborator_access_poller import CollaboratorAccessPoller
from services.escrow_release_policy import (
    EscrowReleasePolicy, compute_commission, compute_escrow_release_date
)
from services.github_service import GitHubService
from services.notification_service import NotificationService
from services.repository_transfer_service import RepositoryTransferService
from services.stripe_refund_service import RefundResult, StripeRefundService
from utils.token_encryption import TokenEncryption

SELLER_GITHUB_TOKEN = "ghp_sellerTokenForTests123"
REPO_URL = "https://github.com/seller-dev/saas-starter"


class FakeClock:
    """Callable clock the tests can move forward"""

    def __init__(self, start: datetime):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        poolclass=StaticPool,
        connect_args={"check_same_thread": False},
    )
    Base.metadata.create_all(engine)
    yield engine
    Base.metadata.drop_all(engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db_session(session_factory):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 3, 2, 12, 0, 0))


@pytest.fixture
def token_cipher():
    return TokenEncryption(hex_key=TEST_ENCRYPTION_KEY)


@pytest.fixture
def github():
    mock = AsyncMock(spec=GitHubService)
    mock.send_collaborator_invite.return_value = None
    mock.check_collaborator_access.return_value = False
    mock.transfer_repository_ownership.return_value = {"full_name": "octocat/saas-starter"}
    return mock


@pytest.fixture
def payments():
    mock = AsyncMock(spec=StripeRefundService)
    mock.refund.return_value = RefundResult(refund_id="re_test_123", status="succeeded", amount_cents=100000)
    return mock


@pytest.fixture
def notifier():
    mock = AsyncMock(spec=NotificationService)
    mock.notify.return_value = True
    mock.notify_admins.return_value = 1
    return mock


@pytest.fixture
def users(db_session, token_cipher):
    seller = User(
        email="seller@example.com",
        display_name="Seller",
        github_username="seller-dev",
        github_access_token_encrypted=token_cipher.encrypt(SELLER_GITHUB_TOKEN),
    )
    buyer = User(email="buyer@example.com", display_name="Buyer")
    admin = User(email="admin@example.com", display_name="Admin", is_admin=True)
    outsider = User(email="outsider@example.com", display_name="Outsider")
    db_session.add_all([seller, buyer, admin, outsider])
    db_session.commit()
    return {"seller": seller, "buyer": buyer, "admin": admin, "outsider": outsider}


@pytest.fixture
def repo_project(db_session, users):
    project = Project(seller_id=users["seller"].id, title="SaaS Starter Kit", github_url=REPO_URL)
    db_session.add(project)
    db_session.commit()
    return project


@pytest.fixture
def zip_project(db_session, users):
    project = Project(seller_id=users["seller"].id, title="Landing Page Template", github_url=None)
    db_session.add(project)
    db_session.commit()
    return project


@pytest.fixture
def make_transaction(db_session, users, repo_project, clock):
    """Insert a transaction directly, optionally paid and with a transfer row"""

    def _make(
        project: Optional[Project] = None,
        amount_cents: int = 100000,
        paid: bool = True,
        paid_at: Optional[datetime] = None,
        escrow_status: EscrowStatus = EscrowStatus.HELD,
        transfer_status: Optional[TransferStatus] = None,
        buyer_github_username: Optional[str] = None,
        initiated: bool = False,
        method: TransferMethod = TransferMethod.AUTOMATIC,
        payment_reference: Optional[str] = None,
    ) -> Transaction:
        project = project or repo_project
        paid_at = paid_at or clock.now
        commission, seller_receives = compute_commission(amount_cents)
        transaction = Transaction(
            project_id=project.id,
            seller_id=project.seller_id,
            buyer_id=users["buyer"].id,
            amount_cents=amount_cents,
            commission_cents=commission,
            seller_receives_cents=seller_receives,
            payment_reference=payment_reference or f"pi_{uuid.uuid4().hex[:24]}",
            payment_status=(PaymentStatus.SUCCEEDED if paid else PaymentStatus.PENDING).value,
            escrow_status=escrow_status.value,
            code_delivery_status=CodeDeliveryStatus.PENDING.value,
            payment_succeeded_at=paid_at if paid else None,
            escrow_release_date=compute_escrow_release_date(paid_at) if paid else None,
            created_at=paid_at - timedelta(minutes=5),
            completed_at=paid_at if paid else None,
        )
        db_session.add(transaction)
        db_session.flush()

        if transfer_status is not None:
            invited = transfer_status not in (TransferStatus.NOT_STARTED, TransferStatus.FAILED)
            db_session.add(RepositoryTransfer(
                transaction_id=transaction.id,
                github_repo_full_name="seller-dev/saas-starter",
                method=method.value,
                status=transfer_status.value,
                seller_github_username="seller-dev",
                buyer_github_username=buyer_github_username,
                initiated_at=paid_at if (initiated or invited) else None,
                invitation_sent_at=paid_at if invited and method == TransferMethod.AUTOMATIC else None,
            ))
        db_session.commit()
        return transaction

    return _make


@pytest.fixture
def escrow_policy(session_factory, notifier, clock):
    return EscrowReleasePolicy(session_factory=session_factory, notifier=notifier, clock=clock)


@pytest.fixture
def transfer_service(session_factory, github, notifier, token_cipher, clock):
    return RepositoryTransferService(
        session_factory=session_factory,
        github=github,
        notifier=notifier,
        token_cipher=token_cipher,
        clock=clock,
    )


@pytest.fixture
def poller(session_factory, github, token_cipher):
    return CollaboratorAccessPoller(session_factory=session_factory, github=github, token_cipher=token_cipher)


@pytest.fixture
def admin_service(session_factory, payments, notifier, clock):
    return AdminEscrowService(session_factory=session_factory, payments=payments, notifier=notifier, clock=clock)


@pytest.fixture
def reload_transaction(session_factory):
    """Fresh read of a transaction row, bypassing any cached instance"""

    def _reload(transaction_id: str) -> Transaction:
        session = session_factory()
        try:
            return session.get(Transaction, transaction_id)
        finally:
            session.close()

    return _reload


@pytest.fixture
def reload_transfer(session_factory):
    def _reload(transaction_id: str) -> Optional[RepositoryTransfer]:
        session = session_factory()
        try:
            return (
                session.query(RepositoryTransfer)
                .filter(RepositoryTransfer.transaction_id == transaction_id)
                .first()
            )
        finally:
            session.close()

    return _reload

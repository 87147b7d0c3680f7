"""
Escrow Release Policy Tests
Commission split, payment events, release eligibility and the release sweep
"""

from datetime import timedelta
from decimal import Decimal

import pytest

from models import CodeDeliveryStatus, EscrowStatus, PaymentStatus, TransferStatus
from services.escrow_release_policy import (
    EscrowReleasePolicy, compute_commission, compute_escrow_release_date
)
from services.notification_service import NotificationEvent
from utils.marketplace_errors import NotFoundError, PermissionDeniedError, ValidationError


class TestCommission:
    """Platform fee and seller payout"""

    def test_standard_commission_split(self):
        assert compute_commission(100000) == (18000, 82000)

    def test_commission_rounds_half_up(self):
        # 18% of 250 cents is 45; of 999 cents is 179.82
        assert compute_commission(250) == (45, 205)
        assert compute_commission(999) == (180, 819)

    def test_custom_rate(self):
        commission, payout = compute_commission(10000, Decimal("0.10"))
        assert commission == 1000
        assert commission + payout == 10000

    def test_release_date_is_seven_days_after_payment(self, clock):
        assert compute_escrow_release_date(clock.now) == clock.now + timedelta(days=7)


class TestCreateTransaction:
    """Purchase recording"""

    def test_creates_pending_transaction_with_split(self, escrow_policy, users, repo_project):
        transaction = escrow_policy.create_transaction(users["buyer"].id, repo_project.id, 100000, "pi_abc")

        assert transaction.payment_status == PaymentStatus.PENDING.value
        assert transaction.escrow_status == EscrowStatus.HELD.value
        assert transaction.commission_cents == 18000
        assert transaction.seller_receives_cents == 82000
        assert transaction.seller_id == users["seller"].id
        assert transaction.escrow_release_date is None

    def test_seller_cannot_buy_own_project(self, escrow_policy, users, repo_project):
        with pytest.raises(PermissionDeniedError) as exc_info:
            escrow_policy.create_transaction(users["seller"].id, repo_project.id, 100000)
        assert exc_info.value.user_message == "Cannot purchase your own project"

    @pytest.mark.parametrize("amount", [0, -500])
    def test_amount_must_be_positive(self, escrow_policy, users, repo_project, amount):
        with pytest.raises(ValidationError):
            escrow_policy.create_transaction(users["buyer"].id, repo_project.id, amount)

    def test_unknown_project(self, escrow_policy, users):
        with pytest.raises(NotFoundError):
            escrow_policy.create_transaction(users["buyer"].id, 9999, 100000)


class TestPaymentEvents:
    """Escrow opening on payment success"""

    @pytest.mark.asyncio
    async def test_payment_success_opens_escrow(self, escrow_policy, users, repo_project, notifier, clock):
        created = escrow_policy.create_transaction(users["buyer"].id, repo_project.id, 100000)

        transaction = await escrow_policy.mark_payment_succeeded(created.id)

        assert transaction.payment_status == PaymentStatus.SUCCEEDED.value
        assert transaction.escrow_status == EscrowStatus.HELD.value
        assert transaction.payment_succeeded_at == clock.now
        assert transaction.escrow_release_date == clock.now + timedelta(days=7)
        assert transaction.code_delivery_status == CodeDeliveryStatus.PENDING.value
        notifier.notify.assert_awaited_once()
        assert notifier.notify.await_args.args[:2] == (users["seller"].id, NotificationEvent.PAYMENT_RECEIVED)

    @pytest.mark.asyncio
    async def test_duplicate_payment_event_keeps_release_date(self, escrow_policy, users, repo_project,
                                                               notifier, clock):
        created = escrow_policy.create_transaction(users["buyer"].id, repo_project.id, 100000)
        first = await escrow_policy.mark_payment_succeeded(created.id)

        clock.advance(days=2)
        second = await escrow_policy.mark_payment_succeeded(created.id)

        assert second.escrow_release_date == first.escrow_release_date
        assert second.payment_succeeded_at == first.payment_succeeded_at
        assert notifier.notify.await_count == 1

    @pytest.mark.asyncio
    async def test_repo_less_listing_is_delivered_on_payment(self, escrow_policy, users, zip_project):
        created = escrow_policy.create_transaction(users["buyer"].id, zip_project.id, 5000)
        transaction = await escrow_policy.mark_payment_succeeded(created.id)
        assert transaction.code_delivery_status == CodeDeliveryStatus.DELIVERED.value

    def test_payment_failure(self, escrow_policy, users, repo_project):
        created = escrow_policy.create_transaction(users["buyer"].id, repo_project.id, 100000)
        transaction = escrow_policy.mark_payment_failed(created.id)
        assert transaction.payment_status == PaymentStatus.FAILED.value

    def test_cannot_fail_a_succeeded_payment(self, escrow_policy, make_transaction):
        transaction = make_transaction()
        with pytest.raises(ValidationError):
            escrow_policy.mark_payment_failed(transaction.id)


class TestReleaseSweep:
    """Time-based release only when nothing is left to deliver"""

    @pytest.mark.asyncio
    async def test_untransferred_repository_stays_held(self, escrow_policy, make_transaction, clock,
                                                       reload_transaction):
        transaction = make_transaction(transfer_status=TransferStatus.COLLABORATOR_ADDED,
                                       buyer_github_username="octocat")
        clock.advance(days=8)

        result = await escrow_policy.run_release_sweep()

        assert result.processed == 1
        assert result.skipped == 1
        assert result.successful == 0
        assert reload_transaction(transaction.id).escrow_status == EscrowStatus.HELD.value

    @pytest.mark.asyncio
    async def test_completed_transfer_released_after_review(self, escrow_policy, make_transaction, clock,
                                                            notifier, reload_transaction):
        transaction = make_transaction(transfer_status=TransferStatus.COMPLETED,
                                       buyer_github_username="octocat")
        clock.advance(days=7, minutes=1)

        result = await escrow_policy.run_release_sweep()

        assert result.released_transaction_ids == [transaction.id]
        stored = reload_transaction(transaction.id)
        assert stored.escrow_status == EscrowStatus.RELEASED.value
        assert stored.released_to_seller_at == clock.now
        assert stored.early_released_at is None
        notifier.notify.assert_awaited_once()

    @pytest.mark.asyncio
    async def test_repo_less_listing_released_after_review(self, escrow_policy, make_transaction, zip_project,
                                                           clock, reload_transaction):
        transaction = make_transaction(project=zip_project)
        clock.advance(days=8)

        result = await escrow_policy.run_release_sweep()

        assert result.successful == 1
        assert reload_transaction(transaction.id).escrow_status == EscrowStatus.RELEASED.value

    @pytest.mark.asyncio
    async def test_not_yet_due_is_not_considered(self, escrow_policy, make_transaction, zip_project, clock):
        make_transaction(project=zip_project)
        clock.advance(days=6, hours=23)

        result = await escrow_policy.run_release_sweep()

        assert result.processed == 0

    @pytest.mark.asyncio
    async def test_disputed_escrow_is_not_released(self, escrow_policy, make_transaction, zip_project, clock):
        transaction = make_transaction(project=zip_project, escrow_status=EscrowStatus.DISPUTED)
        clock.advance(days=10)

        decision = await escrow_policy.release_if_eligible(transaction.id)

        assert not decision.released
        assert "disputed" in decision.reason

    def test_evaluate_release_blocks_inflight_handover(self, make_transaction, repo_project, clock,
                                                       reload_transaction, reload_transfer):
        transaction = make_transaction(transfer_status=TransferStatus.OWNERSHIP_TRANSFERRED,
                                       buyer_github_username="octocat")
        decision = EscrowReleasePolicy.evaluate_release(
            reload_transaction(transaction.id), repo_project, reload_transfer(transaction.id),
            clock.now + timedelta(days=8),
        )
        assert not decision.released
        assert decision.reason == "Ownership handover is still in flight"

"""
Handover Reconciliation Monitor
Detects repository handovers that moved ownership at GitHub (or were about to)
but never settled locally, and transactions whose ownership moved while escrow
sits held well past its release date. Alerts admins; never repairs.
"""

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional

from sqlalchemy.orm import Session

from config import Config
from models import EscrowStatus, RepositoryTransfer, Transaction, TransferStatus
from services.notification_service import NotificationEvent, notification_service
from utils.atomic_transactions import atomic_transaction
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)

STUCK_HANDOVER = "ownership_transferred_escrow_held"
OVERDUE_RELEASE = "completed_transfer_escrow_overdue"


class HandoverReconciliationResult:
    """Result object for one reconciliation run"""

    def __init__(self):
        self.transfers_checked = 0
        self.inconsistencies_found = 0
        self.critical_issues = 0
        self.admin_alerts_sent = 0
        self.execution_time_ms = 0
        self.issues: List[Dict[str, Any]] = []
        self.errors: List[str] = []

    def add_inconsistency(self, transaction_id: str, issue_type: str, details: Dict[str, Any]):
        """Record an inconsistency found"""
        self.inconsistencies_found += 1
        self.issues.append({
            "transaction_id": transaction_id,
            "issue_type": issue_type,
            "details": details,
            "detected_at": get_naive_utc_now().isoformat(),
        })
        if issue_type == STUCK_HANDOVER:
            self.critical_issues += 1

    def add_error(self, error: str):
        self.errors.append(error)
        logger.error(f"HANDOVER_MONITOR_ERROR: {error}")

    def get_summary(self) -> Dict[str, Any]:
        return {
            "transfers_checked": self.transfers_checked,
            "inconsistencies_found": self.inconsistencies_found,
            "critical_issues": self.critical_issues,
            "admin_alerts_sent": self.admin_alerts_sent,
            "execution_time_ms": self.execution_time_ms,
            "error_count": len(self.errors),
        }


class HandoverReconciliationMonitor:
    """Finds half-settled ownership handovers"""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        notifier=None,
        clock: Callable[[], datetime] = get_naive_utc_now,
    ):
        self._session_factory = session_factory
        self._notifier = notifier or notification_service
        self._clock = clock

    def _detect(self, session: Session, now: datetime, result: HandoverReconciliationResult) -> None:
        cutoff = now - timedelta(minutes=Config.HANDOVER_GRACE_PERIOD_MINUTES)
        # Overdue only once a full sweep interval has passed beyond the grace period
        release_cutoff = cutoff - timedelta(minutes=Config.ESCROW_RELEASE_SWEEP_INTERVAL_MINUTES)

        stuck = (
            session.query(RepositoryTransfer, Transaction)
            .join(Transaction, Transaction.id == RepositoryTransfer.transaction_id)
            .filter(
                RepositoryTransfer.status == TransferStatus.OWNERSHIP_TRANSFERRED.value,
                RepositoryTransfer.ownership_requested_at <= cutoff,
                Transaction.escrow_status == EscrowStatus.HELD.value,
            )
            .all()
        )
        for transfer, transaction in stuck:
            result.add_inconsistency(transaction.id, STUCK_HANDOVER, {
                "repo_full_name": transfer.github_repo_full_name,
                "buyer_github_username": transfer.buyer_github_username,
                "ownership_requested_at": transfer.ownership_requested_at.isoformat(),
                "status_before_handover": transfer.status_before_handover,
            })
            logger.critical(
                f"🚨 STUCK_HANDOVER: {transaction.id} {transfer.github_repo_full_name} marked "
                f"ownership_transferred since {transfer.ownership_requested_at.isoformat()} with escrow held"
            )

        overdue = (
            session.query(RepositoryTransfer, Transaction)
            .join(Transaction, Transaction.id == RepositoryTransfer.transaction_id)
            .filter(
                RepositoryTransfer.status == TransferStatus.COMPLETED.value,
                Transaction.escrow_status == EscrowStatus.HELD.value,
                Transaction.escrow_release_date <= release_cutoff,
            )
            .all()
        )
        for transfer, transaction in overdue:
            result.add_inconsistency(transaction.id, OVERDUE_RELEASE, {
                "repo_full_name": transfer.github_repo_full_name,
                "escrow_release_date": transaction.escrow_release_date.isoformat(),
            })
            logger.warning(
                f"⚠️ OVERDUE_RELEASE: {transaction.id} ownership transferred but escrow still held "
                f"past {transaction.escrow_release_date.isoformat()}"
            )

        result.transfers_checked = len(stuck) + len(overdue)

    async def run_reconciliation_check(self) -> HandoverReconciliationResult:
        """Main entry point - detect and alert"""
        start_time = self._clock()
        result = HandoverReconciliationResult()

        try:
            with atomic_transaction(self._session_factory) as session:
                self._detect(session, start_time, result)
        except Exception as e:
            result.add_error(f"Reconciliation query failed: {e}")
            return result

        if result.inconsistencies_found:
            result.admin_alerts_sent = await self._notifier.notify_admins(
                NotificationEvent.HANDOVER_STUCK,
                {"issues": result.issues, "summary": result.get_summary()},
            )

        result.execution_time_ms = int((self._clock() - start_time).total_seconds() * 1000)
        logger.info(f"🔧 HANDOVER_RECONCILIATION_COMPLETE: {result.get_summary()}")
        return result


async def run_handover_reconciliation() -> Dict[str, Any]:
    """Scheduler entry point"""
    result = await HandoverReconciliationMonitor().run_reconciliation_check()
    return result.get_summary()

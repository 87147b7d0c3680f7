"""
Notification sink for lifecycle events.

Fire-and-forget: a failed notification is logged and dropped, and never
rolls back the transition that produced it. Call it only after the
transition has committed.
"""

import logging
from typing import Any, Callable, Dict, Optional

from sqlalchemy.orm import Session

from models import Notification, User

logger = logging.getLogger(__name__)


class NotificationEvent:
    PAYMENT_RECEIVED = "payment_received"
    REPO_TRANSFER_INITIATED = "repo_transfer_initiated"
    GITHUB_USERNAME_REQUIRED = "github_username_required"
    BUYER_GITHUB_CONNECTED = "buyer_github_connected"
    COLLABORATOR_INVITE_SENT = "collaborator_invite_sent"
    REPO_ACCESS_CONFIRMED = "repo_access_confirmed"
    OWNERSHIP_TRANSFERRED = "ownership_transferred"
    ESCROW_RELEASED = "escrow_released"
    ESCROW_REFUNDED = "escrow_refunded"
    ESCROW_DISPUTED = "escrow_disputed"
    DISPUTE_RESOLVED = "dispute_resolved"
    HANDOVER_STUCK = "handover_stuck"


class NotificationService:
    """Persists in-app notifications in a session of its own"""

    def __init__(self, session_factory: Optional[Callable[[], Session]] = None):
        self._session_factory = session_factory

    def _new_session(self) -> Session:
        if self._session_factory is not None:
            return self._session_factory()
        from database import SessionLocal
        return SessionLocal()

    async def notify(self, user_id: int, event_type: str, payload: Optional[Dict[str, Any]] = None) -> bool:
        """Record a notification; returns False instead of raising on failure"""
        session = self._new_session()
        try:
            session.add(Notification(user_id=user_id, event_type=event_type, payload=payload or {}))
            session.commit()
            logger.info(f"🔔 NOTIFICATION_SENT: {event_type} -> user {user_id}")
            return True
        except Exception as e:
            session.rollback()
            logger.error(f"❌ NOTIFICATION_FAILED: {event_type} -> user {user_id}: {e}")
            return False
        finally:
            session.close()

    async def notify_admins(self, event_type: str, payload: Optional[Dict[str, Any]] = None) -> int:
        """Notify every admin user; returns how many were notified"""
        session = self._new_session()
        try:
            admin_ids = [row.id for row in session.query(User.id).filter(User.is_admin.is_(True)).all()]
        except Exception as e:
            logger.error(f"❌ ADMIN_LOOKUP_FAILED: could not load admins for {event_type}: {e}")
            return 0
        finally:
            session.close()

        sent = 0
        for admin_id in admin_ids:
            if await self.notify(admin_id, event_type, payload):
                sent += 1
        return sent


notification_service = NotificationService()

"""Caller role checks against the persisted transaction parties"""

import logging
from enum import Enum

from sqlalchemy.orm import Session

from models import User
from utils.marketplace_errors import PermissionDeniedError

logger = logging.getLogger(__name__)


class PartyRole(Enum):
    BUYER = "buyer"
    SELLER = "seller"
    ADMIN = "admin"


def ensure_party(transaction, caller_id: int, *roles: PartyRole, action: str = "perform this action") -> PartyRole:
    """
    Return the role the caller holds on ``transaction`` out of ``roles``.

    Raises PermissionDeniedError when the caller holds none of them.
    """
    if PartyRole.SELLER in roles and transaction.seller_id == caller_id:
        return PartyRole.SELLER
    if PartyRole.BUYER in roles and transaction.buyer_id == caller_id:
        return PartyRole.BUYER

    allowed = " or ".join(role.value for role in roles)
    logger.warning(
        f"🚫 PERMISSION_DENIED: User {caller_id} is not the {allowed} of transaction {transaction.id} ({action})"
    )
    raise PermissionDeniedError(
        f"User {caller_id} is not the {allowed} of transaction {transaction.id}",
        f"Only the {allowed} can {action}",
    )


def require_seller(transaction, caller_id: int, action: str = "perform this action") -> None:
    ensure_party(transaction, caller_id, PartyRole.SELLER, action=action)


def require_buyer(transaction, caller_id: int, action: str = "perform this action") -> None:
    ensure_party(transaction, caller_id, PartyRole.BUYER, action=action)


def require_participant(transaction, caller_id: int, action: str = "view this transaction") -> PartyRole:
    return ensure_party(transaction, caller_id, PartyRole.BUYER, PartyRole.SELLER, action=action)


def require_admin(session: Session, admin_id: int) -> User:
    """Load the admin user, checking the persisted admin flag"""
    admin = session.query(User).filter(User.id == admin_id).first()
    if admin is None or not admin.is_admin:
        logger.warning(f"🚫 ADMIN_PERMISSION_DENIED: User {admin_id} attempted an admin action")
        raise PermissionDeniedError(
            f"User {admin_id} is not an administrator",
            "Administrator access required",
        )
    return admin

"""
Admin Action Audit Logging
"""

import json
import logging
from typing import Dict, Any, Optional

from sqlalchemy.orm import Session

from models import AuditLog, User
from utils.datetime_helpers import get_naive_utc_now

logger = logging.getLogger(__name__)


class AuditLogger:
    """Writes admin actions to the audit_logs table and the 'audit' log stream"""

    def __init__(self):
        self.audit_logger = logging.getLogger('audit')

    def log_admin_action(
        self,
        session: Session,
        admin_id: int,
        action: str,
        target_type: str,
        target_id: str,
        details: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None
    ) -> AuditLog:
        """
        Record an admin action inside the caller's database transaction.

        The audit row commits or rolls back together with the action it
        describes.
        """
        entry = AuditLog(
            admin_id=admin_id,
            action=action,
            target_type=target_type,
            target_id=str(target_id),
            details=details or {},
            ip_address=ip_address,
        )
        session.add(entry)

        admin = session.query(User).filter(User.id == admin_id).first()
        admin_name = (admin.display_name or admin.email) if admin else 'Unknown'

        self.audit_logger.info(json.dumps({
            'timestamp': get_naive_utc_now().isoformat(),
            'admin_id': admin_id,
            'admin_name': admin_name,
            'action': action,
            'target_type': target_type,
            'target_id': str(target_id),
            'details': details or {},
            'ip_address': ip_address,
        }, default=str))

        logger.info(
            f"🛡️ ADMIN ACTION: {admin_name} ({admin_id}) performed '{action}' on {target_type} {target_id}"
        )
        return entry


# Global audit logger instance
audit_logger = AuditLogger()

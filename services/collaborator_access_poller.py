"""
Collaborator Access Poller

Asks GitHub whether the buyer has accepted the collaborator invitation.
Advisory only: it never changes transfer state. The client polls it on a
fixed interval and calls confirm-transfer itself once it sees ``accepted``.
"""

import logging
from enum import Enum
from typing import Any, Callable, Dict, NamedTuple, Optional

from sqlalchemy.orm import Session

from config import Config
from models import RepositoryTransfer, Transaction, TransferStatus, User
from services.github_service import github_service, parse_github_url
from utils.atomic_transactions import atomic_transaction
from utils.marketplace_errors import NotFoundError
from utils.party_guard import require_participant
from utils.token_encryption import TokenDecryptionError, token_encryption
from utils.transfer_state_validator import TransferStateValidator

logger = logging.getLogger(__name__)


class CollaboratorAccessStatus(Enum):
    ACCEPTED = "accepted"
    PENDING = "pending"
    INVITATION_NOT_SENT = "invitation_not_sent"
    SELLER_TOKEN_MISSING = "seller_token_missing"
    INVALID_GITHUB_URL = "invalid_github_url"


class CollaboratorStatusResult(NamedTuple):
    status: CollaboratorAccessStatus
    github_username: Optional[str] = None
    repo_full_name: Optional[str] = None

    @property
    def accepted(self) -> bool:
        return self.status == CollaboratorAccessStatus.ACCEPTED

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status.value,
            "accepted": self.accepted,
            "github_username": self.github_username,
            "repo_full_name": self.repo_full_name,
            "poll_interval_seconds": Config.COLLABORATOR_POLL_INTERVAL_SECONDS,
        }


class CollaboratorAccessPoller:
    """Read-only reconciliation against the provider's collaborator list"""

    def __init__(
        self,
        session_factory: Optional[Callable[[], Session]] = None,
        github=None,
        token_cipher=None,
    ):
        self._session_factory = session_factory
        self._github = github or github_service
        self._tokens = token_cipher or token_encryption

    async def check_collaborator_status(self, transaction_id: str, caller_id: int) -> CollaboratorStatusResult:
        with atomic_transaction(self._session_factory) as session:
            transaction = session.get(Transaction, transaction_id)
            if transaction is None:
                raise NotFoundError(f"Transaction {transaction_id} not found", "Transaction not found")
            require_participant(transaction, caller_id, "check repository access")

            github_url = transaction.project.github_url
            transfer = (
                session.query(RepositoryTransfer)
                .filter(RepositoryTransfer.transaction_id == transaction.id)
                .first()
            )
            username = transfer.buyer_github_username if transfer is not None else None

            if not github_url or not username or transfer.is_manual \
                    or transfer.status in (TransferStatus.NOT_STARTED.value, TransferStatus.FAILED.value):
                return CollaboratorStatusResult(CollaboratorAccessStatus.INVITATION_NOT_SENT, username)

            repo_full_name = transfer.github_repo_full_name
            if TransferStateValidator.has_buyer_access(TransferStatus(transfer.status)):
                return CollaboratorStatusResult(CollaboratorAccessStatus.ACCEPTED, username, repo_full_name)

            seller = session.get(User, transaction.seller_id)
            encrypted_token = seller.github_access_token_encrypted if seller is not None else None
            if not encrypted_token:
                return CollaboratorStatusResult(CollaboratorAccessStatus.SELLER_TOKEN_MISSING, username, repo_full_name)

            ref = parse_github_url(github_url)
            if ref is None:
                return CollaboratorStatusResult(CollaboratorAccessStatus.INVALID_GITHUB_URL, username)

            try:
                seller_token = self._tokens.decrypt(encrypted_token)
            except TokenDecryptionError as e:
                logger.warning(f"🔐 SELLER_TOKEN_UNUSABLE: transaction {transaction_id}: {e}")
                return CollaboratorStatusResult(CollaboratorAccessStatus.SELLER_TOKEN_MISSING, username, ref.full_name)

        accepted = await self._github.check_collaborator_access(ref.owner, ref.repo, username, seller_token)
        status = CollaboratorAccessStatus.ACCEPTED if accepted else CollaboratorAccessStatus.PENDING
        logger.debug(f"COLLABORATOR_POLL: {transaction_id} @{username} on {ref.full_name}: {status.value}")
        return CollaboratorStatusResult(status, username, ref.full_name)


collaborator_access_poller = CollaboratorAccessPoller()

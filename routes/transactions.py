"""
Transaction Routes
Buyer and seller actions on a transaction's repository transfer and escrow
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException
from pydantic import BaseModel

from models import TransferMethod
from services.collaborator_access_poller import CollaboratorAccessPoller, collaborator_access_poller
from services.repository_transfer_service import RepositoryTransferService, repository_transfer_service
from utils.marketplace_errors import MarketplaceError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/transactions", tags=["transactions"])


class InitiateTransferRequest(BaseModel):
    method: TransferMethod = TransferMethod.AUTOMATIC


class BuyerGithubRequest(BaseModel):
    github_username: str


def get_caller_id(x_user_id: Optional[int] = Header(None)) -> int:
    """Caller identity is set by the upstream auth gateway"""
    if x_user_id is None:
        raise HTTPException(status_code=401, detail="Authentication required")
    return x_user_id


def get_transfer_service() -> RepositoryTransferService:
    return repository_transfer_service


def get_access_poller() -> CollaboratorAccessPoller:
    return collaborator_access_poller


def to_http_error(error: MarketplaceError) -> HTTPException:
    if error.status_code >= 500:
        logger.error(f"❌ REQUEST_FAILED ({error.status_code}): {type(error).__name__}: {error}")
    else:
        logger.info(f"Request rejected ({error.status_code}): {error}")
    return HTTPException(status_code=error.status_code, detail=error.user_message)


@router.post("/{transaction_id}/repository-transfer")
async def initiate_repository_transfer(
    transaction_id: str,
    body: Optional[InitiateTransferRequest] = None,
    caller_id: int = Depends(get_caller_id),
    service: RepositoryTransferService = Depends(get_transfer_service),
):
    """Seller starts the handover; invites the buyer if their GitHub username is known"""
    method = body.method if body is not None else TransferMethod.AUTOMATIC
    try:
        result = await service.initiate_transfer(caller_id, transaction_id, method)
    except MarketplaceError as e:
        raise to_http_error(e)
    return result.to_dict()


@router.put("/{transaction_id}/buyer-github")
async def set_buyer_github_username(
    transaction_id: str,
    body: BuyerGithubRequest,
    caller_id: int = Depends(get_caller_id),
    service: RepositoryTransferService = Depends(get_transfer_service),
):
    try:
        result = await service.set_buyer_github_username(caller_id, transaction_id, body.github_username)
    except MarketplaceError as e:
        raise to_http_error(e)
    return result.to_dict()


@router.post("/{transaction_id}/confirm-transfer")
async def confirm_transfer(
    transaction_id: str,
    caller_id: int = Depends(get_caller_id),
    service: RepositoryTransferService = Depends(get_transfer_service),
):
    try:
        result = await service.confirm_transfer(caller_id, transaction_id)
    except MarketplaceError as e:
        raise to_http_error(e)
    return result.to_dict()


@router.post("/{transaction_id}/code-access")
async def mark_code_accessed(
    transaction_id: str,
    caller_id: int = Depends(get_caller_id),
    service: RepositoryTransferService = Depends(get_transfer_service),
):
    try:
        result = await service.mark_code_accessed(caller_id, transaction_id)
    except MarketplaceError as e:
        raise to_http_error(e)
    return result.to_dict()


@router.post("/{transaction_id}/transfer-ownership")
async def transfer_ownership(
    transaction_id: str,
    caller_id: int = Depends(get_caller_id),
    service: RepositoryTransferService = Depends(get_transfer_service),
):
    try:
        result = await service.transfer_ownership(transaction_id, caller_id)
    except MarketplaceError as e:
        raise to_http_error(e)
    return result.to_dict()


@router.post("/{transaction_id}/early-release")
async def seller_early_release(
    transaction_id: str,
    caller_id: int = Depends(get_caller_id),
    service: RepositoryTransferService = Depends(get_transfer_service),
):
    try:
        result = await service.seller_early_release(transaction_id, caller_id)
    except MarketplaceError as e:
        raise to_http_error(e)
    return result.to_dict()


@router.get("/{transaction_id}/timeline")
async def get_timeline(
    transaction_id: str,
    caller_id: int = Depends(get_caller_id),
    service: RepositoryTransferService = Depends(get_transfer_service),
):
    try:
        timeline = service.get_timeline_data(transaction_id, caller_id)
    except MarketplaceError as e:
        raise to_http_error(e)
    return timeline.to_dict()


@router.get("/{transaction_id}/collaborator-status")
async def get_collaborator_status(
    transaction_id: str,
    caller_id: int = Depends(get_caller_id),
    poller: CollaboratorAccessPoller = Depends(get_access_poller),
):
    """Polled by the client every 30 seconds while the invitation is outstanding"""
    try:
        result = await poller.check_collaborator_status(transaction_id, caller_id)
    except MarketplaceError as e:
        raise to_http_error(e)
    return result.to_dict()

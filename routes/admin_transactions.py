"""
Admin Transaction Routes
Refunds, manual escrow release and dispute handling
"""

import logging

from fastapi import APIRouter, Depends, Request
from pydantic import BaseModel

from routes.transactions import get_caller_id, to_http_error
from services.admin_escrow_service import AdminEscrowService, admin_escrow_service
from utils.marketplace_errors import MarketplaceError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/admin/transactions", tags=["admin"])


class AdminReasonRequest(BaseModel):
    reason: str


def get_admin_service() -> AdminEscrowService:
    return admin_escrow_service


def client_ip(request: Request) -> str:
    forwarded = request.headers.get("x-forwarded-for")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


@router.post("/{transaction_id}/refund")
async def refund_transaction(
    transaction_id: str,
    body: AdminReasonRequest,
    request: Request,
    admin_id: int = Depends(get_caller_id),
    service: AdminEscrowService = Depends(get_admin_service),
):
    try:
        result = await service.refund_transaction(admin_id, transaction_id, body.reason, client_ip(request))
    except MarketplaceError as e:
        raise to_http_error(e)
    return result.to_dict()


@router.post("/{transaction_id}/release-escrow")
async def release_escrow(
    transaction_id: str,
    body: AdminReasonRequest,
    request: Request,
    admin_id: int = Depends(get_caller_id),
    service: AdminEscrowService = Depends(get_admin_service),
):
    try:
        result = await service.release_escrow_manually(admin_id, transaction_id, body.reason, client_ip(request))
    except MarketplaceError as e:
        raise to_http_error(e)
    return result.to_dict()


@router.post("/{transaction_id}/dispute")
async def open_dispute(
    transaction_id: str,
    body: AdminReasonRequest,
    request: Request,
    admin_id: int = Depends(get_caller_id),
    service: AdminEscrowService = Depends(get_admin_service),
):
    try:
        result = await service.mark_disputed(admin_id, transaction_id, body.reason, client_ip(request))
    except MarketplaceError as e:
        raise to_http_error(e)
    return result.to_dict()


@router.post("/{transaction_id}/resolve-dispute")
async def resolve_dispute(
    transaction_id: str,
    body: AdminReasonRequest,
    request: Request,
    admin_id: int = Depends(get_caller_id),
    service: AdminEscrowService = Depends(get_admin_service),
):
    try:
        result = await service.resolve_dispute(admin_id, transaction_id, body.reason, client_ip(request))
    except MarketplaceError as e:
        raise to_http_error(e)
    return result.to_dict()

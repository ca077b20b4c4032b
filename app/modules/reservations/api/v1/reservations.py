"""
Reservations API

- GET  /customers/{customer_id}/reservations          cached read model
- POST /customers/{customer_id}/reservations/refresh  queue a refresh
"""
from uuid import UUID

import structlog
from fastapi import APIRouter, Depends, Response, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.modules.reservations.domain.service import ReservationRefreshService
from app.schemas.reservations import RefreshTicket, ReservationDataResponse
from app.shared.adapters.secret_store import SecretStore, get_secret_store
from app.shared.db.session import get_db

router = APIRouter(prefix="/customers/{customer_id}/reservations", tags=["Reservations"])
logger = structlog.get_logger()


@router.get("", response_model=ReservationDataResponse, response_model_by_alias=True)
async def get_reservations(
    customer_id: UUID,
    db: AsyncSession = Depends(get_db),
    secret_store: SecretStore = Depends(get_secret_store)
):
    service = ReservationRefreshService(db, secret_store=secret_store)
    return await service.get_reservation_data(customer_id)


@router.post(
    "/refresh",
    response_model=RefreshTicket,
    response_model_by_alias=True,
    status_code=status.HTTP_202_ACCEPTED
)
async def refresh_reservations(
    customer_id: UUID,
    response: Response,
    db: AsyncSession = Depends(get_db),
    secret_store: SecretStore = Depends(get_secret_store)
):
    """
    Queue a reservation refresh.

    Returns 202 with the job id, or 200 when a refresh is already running
    (nothing is queued in that case). Poll the GET endpoint for the outcome.
    """
    service = ReservationRefreshService(db, secret_store=secret_store)
    ticket = await service.start_refresh(customer_id)
    if not ticket.accepted:
        response.status_code = status.HTTP_200_OK
    return ticket

from .domain.service import ReservationRefreshService

__all__ = ["ReservationRefreshService"]

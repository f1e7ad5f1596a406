"""API routers."""

from bounty_board_service.routers import health

__all__ = ["health"]

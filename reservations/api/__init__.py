"""
HTTP API for the reservation engine
"""

from reservations.api.reservations_api import router as reservations_router

__all__ = ['reservations_router']

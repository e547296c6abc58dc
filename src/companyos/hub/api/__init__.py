"""CompanyOS Hub HTTP and WebSocket API."""

from companyos.hub.api.app import create_app

__all__ = ["create_app"]

"""HTTP clients for the freight management backend."""

from .api_client import AuthenticatedClient, RequestContext

__all__ = [
    "AuthenticatedClient",
    "RequestContext",
]

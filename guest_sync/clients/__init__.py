"""
API clients for the directory (Microsoft Graph) and the source system (Qlik Cloud).
"""

from guest_sync.clients.base import ApiClientBase, ApiError, ApiAuthenticationError
from guest_sync.clients.graph import GraphDirectoryClient
from guest_sync.clients.qlik import QlikUserClient

__all__ = [
    'ApiClientBase',
    'ApiError',
    'ApiAuthenticationError',
    'GraphDirectoryClient',
    'QlikUserClient',
]

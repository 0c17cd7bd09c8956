"""User store backends."""

from .base import UserStore, UserRecord, UserStoreError, TenantNotFoundError
from .memory import InMemoryUserStore
from .keycloak import KeycloakUserStore

__all__ = [
    'UserStore',
    'UserRecord',
    'UserStoreError',
    'TenantNotFoundError',
    'InMemoryUserStore',
    'KeycloakUserStore',
]

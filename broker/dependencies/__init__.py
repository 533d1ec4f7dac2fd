"""Expose dependency helpers for FastAPI routers."""

from .clients import (
    get_audit_trail,
    get_authorization_server,
    get_client_registry,
    get_connect_flow_service,
    get_credential_vault,
    get_platform_registry,
    get_signing_key_manager,
    get_sqlite_store,
    get_token_cipher_service,
    get_token_codec,
    get_transaction_store,
)
from .config import SettingsDependency, get_app_settings

__all__ = [
    "SettingsDependency",
    "get_app_settings",
    "get_audit_trail",
    "get_authorization_server",
    "get_client_registry",
    "get_connect_flow_service",
    "get_credential_vault",
    "get_platform_registry",
    "get_signing_key_manager",
    "get_sqlite_store",
    "get_token_cipher_service",
    "get_token_codec",
    "get_transaction_store",
]

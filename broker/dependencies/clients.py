"""
Factory functions to provide shared clients and services as FastAPI dependencies.
"""

from functools import lru_cache

from broker.clients import PlatformRegistry, SQLiteStore
from broker.core.config import get_settings
from broker.services import (
    AuditTrail,
    AuthorizationServer,
    ClientRegistry,
    ConnectFlowService,
    CredentialVault,
    SigningKeyManager,
    TokenCipherService,
    TokenCodec,
    TransactionStore,
)


@lru_cache()
def _settings():
    """Internal helper to cache settings for client factories."""
    return get_settings()


@lru_cache()
def get_sqlite_store() -> SQLiteStore:
    """Provide shared SQLite record store."""
    return SQLiteStore(_settings().database_path)


@lru_cache()
def get_token_cipher_service() -> TokenCipherService:
    """Provide symmetric encryption helper for credential storage."""
    security = _settings().security
    return TokenCipherService(
        secret=security.token_encryption_secret,
        previous_secrets=security.previous_encryption_secrets,
    )


@lru_cache()
def get_signing_key_manager() -> SigningKeyManager:
    """Load the signing key pair once per process."""
    return SigningKeyManager.from_settings(_settings().signing)


@lru_cache()
def get_token_codec() -> TokenCodec:
    return TokenCodec(get_signing_key_manager(), issuer=_settings().issuer)


@lru_cache()
def get_platform_registry() -> PlatformRegistry:
    """Provide the registry of configured upstream platforms."""
    return PlatformRegistry.from_settings(_settings())


@lru_cache()
def get_transaction_store() -> TransactionStore:
    settings = _settings()
    security = settings.security
    return TransactionStore(
        secret=security.transaction_secret or security.token_encryption_secret,
        ttl_seconds=settings.oauth.state_ttl_seconds,
        ledger=get_sqlite_store(),
    )


@lru_cache()
def get_credential_vault() -> CredentialVault:
    """Provide the credential vault backed by the shared store."""
    return CredentialVault(
        store=get_sqlite_store(),
        cipher=get_token_cipher_service(),
        registry=get_platform_registry(),
    )


@lru_cache()
def get_audit_trail() -> AuditTrail:
    return AuditTrail(get_sqlite_store())


def get_connect_flow_service() -> ConnectFlowService:
    """Build a connect flow service using configured clients."""
    return ConnectFlowService(
        registry=get_platform_registry(),
        transactions=get_transaction_store(),
        vault=get_credential_vault(),
        audit=get_audit_trail(),
    )


@lru_cache()
def get_client_registry() -> ClientRegistry:
    oauth = _settings().oauth
    return ClientRegistry(
        get_sqlite_store(),
        supported_scopes=oauth.supported_scopes,
        trusted_redirect_hosts=oauth.trusted_redirect_hosts,
    )


@lru_cache()
def get_authorization_server() -> AuthorizationServer:
    """Provide the broker's own authorization server."""
    settings = _settings()
    return AuthorizationServer(
        codec=get_token_codec(),
        store=get_sqlite_store(),
        clients=get_client_registry(),
        vault=get_credential_vault(),
        settings=settings.oauth,
        resource_url=settings.resource_url,
    )


__all__ = [
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

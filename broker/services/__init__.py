"""Service layer exports."""

from .audit import AuditTrail
from .authorization_server import AuthorizationServer, ClientRegistry, Principal
from .connect_flow import (
    ConnectFlowService,
    ConnectOutcome,
    ConnectStage,
    ConnectStart,
    FailureReason,
)
from .credential_vault import CredentialVault
from .identity import RequestContext, coerce_user_id_to_uuid, resolve_user_id
from .signing_keys import SigningKeyManager, generate_signing_key_pair
from .token_cipher import TokenCipherService
from .token_codec import IssuedToken, TokenCodec, VerifiedToken
from .transactions import (
    TransactionStore,
    derive_code_challenge,
    generate_code_verifier,
    verify_code_challenge,
)

__all__ = [
    "AuditTrail",
    "AuthorizationServer",
    "ClientRegistry",
    "ConnectFlowService",
    "ConnectOutcome",
    "ConnectStage",
    "ConnectStart",
    "CredentialVault",
    "FailureReason",
    "IssuedToken",
    "Principal",
    "RequestContext",
    "SigningKeyManager",
    "TokenCipherService",
    "TokenCodec",
    "TransactionStore",
    "VerifiedToken",
    "coerce_user_id_to_uuid",
    "derive_code_challenge",
    "generate_code_verifier",
    "generate_signing_key_pair",
    "resolve_user_id",
    "verify_code_challenge",
]

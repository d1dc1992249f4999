"""
Client for the HashiCorp Vault PKI secret engine
"""

from vaultpki.client import AuthenticatedVaultClient
from vaultpki.client import VaultClient
from vaultpki.engines import VaultSystemBackendEngine
from vaultpki.exceptions import VaultAuthError
from vaultpki.exceptions import VaultAuthExpired
from vaultpki.exceptions import VaultConflictError
from vaultpki.exceptions import VaultException
from vaultpki.exceptions import VaultInvocationError
from vaultpki.exceptions import VaultNotFoundError
from vaultpki.exceptions import VaultPermissionDeniedError
from vaultpki.exceptions import VaultPolicyViolationError
from vaultpki.exceptions import VaultServerError
from vaultpki.exceptions import VaultTransportError
from vaultpki.exceptions import VaultUnavailableError
from vaultpki.factory import VaultPKISecretEngineFactory
from vaultpki.factory import get_authd_client
from vaultpki.factory import get_factory
from vaultpki.factory import parse_config
from vaultpki.pki import VaultPKISecretEngine

__version__ = "0.1.0"

__all__ = [
    "AuthenticatedVaultClient",
    "VaultAuthError",
    "VaultAuthExpired",
    "VaultClient",
    "VaultConflictError",
    "VaultException",
    "VaultInvocationError",
    "VaultNotFoundError",
    "VaultPKISecretEngine",
    "VaultPKISecretEngineFactory",
    "VaultPermissionDeniedError",
    "VaultPolicyViolationError",
    "VaultServerError",
    "VaultSystemBackendEngine",
    "VaultTransportError",
    "VaultUnavailableError",
    "get_authd_client",
    "get_factory",
    "parse_config",
]

"""
Vault-related exceptions
"""


class VaultException(Exception):
    """
    Base class for exceptions raised by this package
    """

    retryable = False


class VaultAuthError(VaultException):
    """
    Base class for authentication/authorization failures.
    These are recoverable by re-authenticating, never by retrying blindly.
    """


class VaultAuthExpired(VaultAuthError):
    """
    Raised when cached authentication data is reported to be outdated locally.
    """


class VaultTransportError(VaultException):
    """
    Raised when the Vault server could not be reached at all
    (connection refused, DNS failure, timeout, exhausted retries).
    """

    retryable = True


# https://developer.hashicorp.com/vault/api-docs#http-status-codes
class VaultInvocationError(VaultException):
    """
    HTTP 400 and invalid arguments passed to this package
    """


class VaultPolicyViolationError(VaultInvocationError):
    """
    HTTP 400 where the request was rejected by the constraints
    of a PKI role, e.g. a common name outside of ``allowed_domains``
    or a TTL exceeding ``max_ttl``.
    """


class VaultConflictError(VaultInvocationError):
    """
    HTTP 400 where the request collides with existing state,
    e.g. enabling a secret engine on a path that is already in use.
    """


class VaultUnauthorizedError(VaultAuthError):
    """
    HTTP 401
    """


class VaultPermissionDeniedError(VaultAuthError):
    """
    HTTP 403
    """


class VaultNotFoundError(VaultException):
    """
    HTTP 404
    In some cases, this is also raised when the client does not have
    the correct permissions for the requested endpoint.
    PKI operations raise it for unknown roles, serial numbers and mounts.
    """


class VaultUnsupportedOperationError(VaultException):
    """
    HTTP 405
    """


class VaultPreconditionFailedError(VaultException):
    """
    HTTP 412
    """

    retryable = True


class VaultRateLimitExceededError(VaultException):
    """
    HTTP 429
    """

    retryable = True


class VaultServerError(VaultException):
    """
    HTTP 500
    HTTP 502
    """

    retryable = True


class VaultUnavailableError(VaultServerError):
    """
    HTTP 503
    Indicates maintenance or sealed status.
    """

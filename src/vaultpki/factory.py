"""
Build Vault clients and PKI engines from configuration.

Configuration is a nested mapping:

.. code-block:: yaml

    server:
      url: https://vault.example.com:8200
      namespace: null
      verify: /etc/ssl/vault-ca.pem   # path, bool or inline PEM
    auth:
      method: token                   # token, userpass or approle
      token: hvs.xxx
      token_lookup: true
      renew_before: 60
    client:
      connect_timeout: 9.2
      read_timeout: 30
      max_retries: 5

Unset server and token values fall back to the ``VAULT_ADDR``,
``VAULT_NAMESPACE``, ``VAULT_CACERT`` and ``VAULT_TOKEN`` environment
variables used by the Vault CLI.
"""

import copy
import logging
import os

from vaultpki import auth as vauth
from vaultpki import client as vclient
from vaultpki.engines import VaultSystemBackendEngine
from vaultpki.exceptions import VaultInvocationError
from vaultpki.helpers import normalize_mount
from vaultpki.helpers import timestring_map
from vaultpki.pki import VaultPKISecretEngine

log = logging.getLogger(__name__)

AUTH_METHODS = ("token", "userpass", "approle")

DEFAULT_CONFIG = {
    "server": {
        "url": None,
        "namespace": None,
        "verify": None,
    },
    "auth": {
        "method": "token",
        "token": None,
        "token_lookup": True,
        "username": None,
        "password": None,
        "role_id": None,
        "secret_id": None,
        "mount": None,
        "renew_before": vclient.DEFAULT_RENEW_BEFORE,
    },
    "client": {
        "connect_timeout": vclient.DEFAULT_CONNECT_TIMEOUT,
        "read_timeout": vclient.DEFAULT_READ_TIMEOUT,
        "max_retries": vclient.DEFAULT_MAX_RETRIES,
        "backoff_factor": vclient.DEFAULT_BACKOFF_FACTOR,
        "backoff_max": vclient.DEFAULT_BACKOFF_MAX,
        "backoff_jitter": vclient.DEFAULT_BACKOFF_JITTER,
        "retry_post": vclient.DEFAULT_RETRY_POST,
        "retry_status": list(vclient.DEFAULT_RETRY_STATUS),
        "respect_retry_after": vclient.DEFAULT_RESPECT_RETRY_AFTER,
        "retry_after_max": vclient.DEFAULT_RETRY_AFTER_MAX,
    },
}

ENV_FALLBACKS = (
    ("server", "url", "VAULT_ADDR"),
    ("server", "namespace", "VAULT_NAMESPACE"),
    ("server", "verify", "VAULT_CACERT"),
    ("auth", "token", "VAULT_TOKEN"),
)


def parse_config(config=None, environ=None):
    """
    Merge the passed configuration with environment fallbacks and defaults
    and validate the result.

    config
        Nested mapping as described in the module documentation.

    environ
        Mapping to read fallbacks from. Defaults to ``os.environ``.
    """
    config = config or {}
    environ = os.environ if environ is None else environ
    unknown = set(config).difference(DEFAULT_CONFIG)
    if unknown:
        raise VaultInvocationError(f"Unknown configuration sections: {sorted(unknown)}")

    merged = copy.deepcopy(DEFAULT_CONFIG)
    for section, defaults in merged.items():
        overrides = config.get(section) or {}
        if not isinstance(overrides, dict):
            raise VaultInvocationError(f"Configuration section `{section}` must be a mapping")
        unknown = set(overrides).difference(defaults)
        if unknown:
            raise VaultInvocationError(f"Unknown `{section}` settings: {sorted(unknown)}")
        defaults.update(overrides)

    for section, key, env_var in ENV_FALLBACKS:
        if merged[section][key] is None and environ.get(env_var):
            merged[section][key] = environ[env_var]

    if not merged["server"]["url"]:
        raise VaultInvocationError("Missing Vault server URL (server:url or VAULT_ADDR)")
    if merged["auth"]["method"] not in AUTH_METHODS:
        raise VaultInvocationError(
            f"auth:method must be one of {AUTH_METHODS}, got `{merged['auth']['method']}`"
        )
    if merged["auth"]["method"] == "token" and not merged["auth"]["token"]:
        raise VaultInvocationError("Token authentication requires auth:token or VAULT_TOKEN")
    merged["auth"]["renew_before"] = timestring_map(merged["auth"]["renew_before"]) or 0
    return merged


def get_client(config):
    """
    Return an unauthenticated client for a parsed configuration.
    """
    return vclient.VaultClient(**config["server"], **config["client"])


def get_auth(config, client=None):
    """
    Return the authentication backend configured in ``auth:method``.

    client
        Unauthenticated client to log in with. Required for
        ``userpass`` and ``approle``.
    """
    auth_config = config["auth"]
    method = auth_config["method"]
    if method == "token":
        return vauth.VaultTokenAuth(token=auth_config["token"])
    if client is None:
        raise VaultInvocationError(f"{method} authentication requires a client to log in with")
    if method == "userpass":
        return vauth.VaultUserpassAuth(
            auth_config["username"],
            auth_config["password"],
            client,
            mount=auth_config["mount"],
        )
    return vauth.VaultAppRoleAuth(
        auth_config["role_id"],
        client,
        secret_id=auth_config["secret_id"],
        mount=auth_config["mount"],
    )


def get_authd_client(config=None, session=None):
    """
    Return an authenticated client.

    config
        Raw configuration mapping, see :py:func:`parse_config`.

    session
        Optional ``requests.Session`` to use, e.g. one with a custom transport adapter.
    """
    config = parse_config(config)
    login_client = vclient.VaultClient(**config["server"], **config["client"], session=session)
    auth = get_auth(config, client=login_client)
    client = vclient.AuthenticatedVaultClient(
        auth,
        session=login_client.session,
        renew_before=config["auth"]["renew_before"],
        **config["server"],
        **config["client"],
    )
    if config["auth"]["method"] == "token" and config["auth"]["token_lookup"]:
        # plain token strings do not tell us when they expire
        client.refresh_token_info()
    return client


def get_factory(config=None, session=None):
    """
    Return a :py:class:`VaultPKISecretEngineFactory` for a configuration mapping.
    """
    return VaultPKISecretEngineFactory(get_authd_client(config, session=session))


class VaultPKISecretEngineFactory:
    """
    Produce PKI engine clients bound to arbitrary mount paths.
    Each call returns a fresh, lightweight handle sharing this factory's client,
    so a root and an intermediate CA engine can be used side by side.
    """

    def __init__(self, client):
        self.client = client

    def engine(self, mount="pki"):
        """
        Return a :py:class:`~vaultpki.pki.VaultPKISecretEngine` for ``mount``.
        Whether the engine is actually mounted is only found out
        when the first operation fails.
        """
        return VaultPKISecretEngine(self.client, mount=mount)

    def system_backend(self):
        """
        Return a :py:class:`~vaultpki.engines.VaultSystemBackendEngine`
        sharing this factory's client.
        """
        return VaultSystemBackendEngine(self.client)

    def ensure_engine(self, mount="pki", description=None, options=None):
        """
        Enable a PKI engine at ``mount`` unless something is mounted there already
        and return a client for it.
        """
        mount = normalize_mount(mount)
        backend = self.system_backend()
        existing = backend.list_mounts().get(mount)
        if existing is None:
            backend.enable("pki", mount, description=description, options=options)
        elif existing.type != "pki":
            raise VaultInvocationError(
                f"Mount `{mount}` is a `{existing.type}` secret engine, not `pki`"
            )
        else:
            log.debug(f"PKI engine at `{mount}` is already enabled")
        return self.engine(mount)

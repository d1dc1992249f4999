"""
Manage secret engine mounts via the Vault system backend.

API documentation: https://developer.hashicorp.com/vault/api-docs/system/mounts
"""

import logging

from vaultpki.exceptions import VaultConflictError
from vaultpki.exceptions import VaultInvocationError
from vaultpki.exceptions import VaultNotFoundError
from vaultpki.helpers import normalize_mount
from vaultpki.models import EngineEnableOptions
from vaultpki.models import MountInfo

log = logging.getLogger(__name__)

# Vault answers with HTTP 400 in both cases
CONFLICT_MARKERS = ("path is already in use", "existing mount at")
NOT_MOUNTED_MARKERS = ("no secret engine mount", "cannot fetch sysview", "no mount at")


def _as_options(options):
    if options is None or isinstance(options, EngineEnableOptions):
        return options
    if isinstance(options, dict):
        return EngineEnableOptions(**options)
    raise VaultInvocationError(
        f"options must be a dict or EngineEnableOptions, got {type(options).__name__}"
    )


class VaultSystemBackendEngine:
    """
    Enable, disable and inspect secret engines.

    A mount path is either unmounted or enabled. Enabling an enabled path
    raises VaultConflictError, disabling an unmounted one VaultNotFoundError.
    Disabling a mount makes Vault delete all of its data, so enabling it
    again yields a fresh engine.
    """

    def __init__(self, client):
        self.client = client

    def list_mounts(self):
        """
        Return a mapping of mount path (without trailing slash)
        to :py:class:`~vaultpki.models.MountInfo`.
        """
        res = self.client.get("sys/mounts")
        # Older Vault versions duplicate the mounts on the top level
        mounts = res.get("data", res)
        return {
            path.strip("/"): MountInfo(path, **info)
            for path, info in mounts.items()
            if isinstance(info, dict) and "type" in info
        }

    def is_engine_mounted(self, mount_path):
        """
        Check whether a secret engine is enabled at ``mount_path``.
        """
        return normalize_mount(mount_path) in self.list_mounts()

    def read_mount(self, mount_path):
        """
        Return :py:class:`~vaultpki.models.MountInfo` for a mount.
        Raises VaultNotFoundError if nothing is mounted there.
        """
        mount_path = normalize_mount(mount_path)
        try:
            return self.list_mounts()[mount_path]
        except KeyError as err:
            raise VaultNotFoundError(f"No secret engine mounted at `{mount_path}`") from err

    def enable(self, engine_type, mount_path, description=None, options=None):
        """
        Enable a secret engine.

        engine_type
            The engine type, e.g. ``pki`` or ``kv``.

        mount_path
            The path to mount the engine at.

        description
            Human-friendly description of the mount.

        options
            :py:class:`~vaultpki.models.EngineEnableOptions` or a dict of its
            parameters, e.g. ``{"max_lease_ttl": "87600h"}``.
        """
        mount_path = normalize_mount(mount_path)
        options = _as_options(options)
        payload = {"type": engine_type}
        if description is not None:
            payload["description"] = description
        if options is not None:
            payload.update(options.to_payload())

        try:
            self.client.post(f"sys/mounts/{mount_path}", payload=payload)
        except VaultInvocationError as err:
            if any(marker in str(err).lower() for marker in CONFLICT_MARKERS):
                raise VaultConflictError(str(err)) from err
            raise
        log.debug(f"Enabled `{engine_type}` secret engine at `{mount_path}`")

    def disable(self, mount_path):
        """
        Disable the secret engine at ``mount_path``. All data stored by the engine
        (CA, roles, issued certificates) is deleted by Vault.
        Raises VaultNotFoundError if nothing is mounted there, also on repeated calls.
        The check and the deletion are two requests. Two clients disabling the
        same mount concurrently can therefore both succeed.
        """
        mount_path = normalize_mount(mount_path)
        if not self.is_engine_mounted(mount_path):
            raise VaultNotFoundError(f"No secret engine mounted at `{mount_path}`")
        self.client.delete(f"sys/mounts/{mount_path}")
        log.debug(f"Disabled secret engine at `{mount_path}`")

    def read_mount_config(self, mount_path):
        """
        Return the tunable configuration of a mount (lease TTLs etc.).
        """
        mount_path = normalize_mount(mount_path)
        try:
            return self.client.get(f"sys/mounts/{mount_path}/tune")["data"]
        except VaultInvocationError as err:
            if any(marker in str(err).lower() for marker in NOT_MOUNTED_MARKERS):
                raise VaultNotFoundError(str(err)) from err
            raise

    def tune(self, mount_path, options=None, description=None):
        """
        Update the configuration of an existing mount.

        options
            :py:class:`~vaultpki.models.EngineEnableOptions` or a dict of its
            parameters. Engine ``options`` are sent along as well.
        """
        mount_path = normalize_mount(mount_path)
        options = _as_options(options)
        payload = {}
        if options is not None:
            payload.update(options.config)
            if options.options:
                payload["options"] = dict(options.options)
        if description is not None:
            payload["description"] = description
        if not payload:
            raise VaultInvocationError("Nothing to tune")
        try:
            self.client.post(f"sys/mounts/{mount_path}/tune", payload=payload)
        except VaultInvocationError as err:
            if any(marker in str(err).lower() for marker in NOT_MOUNTED_MARKERS):
                raise VaultNotFoundError(str(err)) from err
            raise

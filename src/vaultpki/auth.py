"""
Authentication backends for the Vault client.

Every backend implements the same small interface the authenticated
client relies on: ``get_token``, ``is_valid``, ``is_renewable``,
``used`` and ``update_token``. Token state is shared between threads,
so it is guarded by a read/write lock: requests only need to read the
token, while logins, renewals and use counting replace or modify it.
"""

import logging
import threading
from contextlib import contextmanager

from vaultpki.exceptions import VaultAuthExpired
from vaultpki.exceptions import VaultInvocationError
from vaultpki.leases import VaultToken

log = logging.getLogger(__name__)


class ReadWriteLock:
    """
    Lock allowing many concurrent readers or a single writer.
    Waiting writers block new readers so renewals cannot be starved.
    """

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self):
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if not self._readers:
                    self._cond.notify_all()

    @contextmanager
    def write(self):
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


def _hydrate_token(token):
    if token is None or isinstance(token, VaultToken):
        return token
    if isinstance(token, str):
        return VaultToken(lease_id=token)
    if isinstance(token, dict):
        return VaultToken(**token)
    raise VaultInvocationError(f"Cannot use {type(token).__name__} as a Vault token")


class VaultTokenAuth:
    """
    Token authentication backend. Holds a single token, which can be
    renewed, but not replaced once it has expired.
    """

    def __init__(self, token=None):
        self.lock = ReadWriteLock()
        self.token = _hydrate_token(token)

    def is_renewable(self):
        """
        Check whether the contained token is renewable.
        """
        with self.lock.read():
            return self.token is not None and self.token.is_renewable()

    def is_valid(self, valid_for=0):
        """
        Check whether the contained token is valid.
        """
        with self.lock.read():
            return self.token is not None and self.token.is_valid(valid_for)

    def get_token(self):
        """
        Get the contained token if it is valid, otherwise
        raises VaultAuthExpired.
        """
        with self.lock.read():
            if self.token is not None and self.token.is_valid():
                return self.token
        raise VaultAuthExpired()

    def used(self):
        """
        Increment the use counter for the contained token.
        """
        with self.lock.write():
            if self.token is not None:
                self.token.used()

    def update_token(self, auth):
        """
        Partially update the contained token (e.g. after renewal).
        """
        with self.lock.write():
            if self.token is None:
                self.token = VaultToken(**auth)
            else:
                self.token = self.token.with_renewed(**auth)
            log.debug(f"Updated Vault token information, new TTL: {self.token.duration}s")

    def replace_token(self, token):
        """
        Completely replace the contained token with a new one.
        """
        with self.lock.write():
            self.token = _hydrate_token(token)


class VaultLoginAuth(VaultTokenAuth):
    """
    Base class for authentication methods that exchange credentials
    for a token via ``auth/<mount>/login``. When the token expires,
    a new one is requested transparently.
    """

    default_mount = None

    def __init__(self, client, mount=None, token=None):
        self.client = client
        self.mount = (mount or self.default_mount).strip("/")
        super().__init__(token=token)

    def get_token(self):
        """
        Return the current token, logging in again when it is unusable.
        """
        with self.lock.read():
            if self.token is not None and self.token.is_valid():
                return self.token
        with self.lock.write():
            # Another thread might have logged in while we waited for the lock
            if self.token is None or not self.token.is_valid():
                self.token = self._login()
            return self.token

    def _login(self):
        log.debug(f"Authenticating against Vault at auth/{self.mount} ({type(self).__name__})")
        res = self.client.post(self._login_endpoint(), payload=self._login_payload())
        try:
            return VaultToken(**res["auth"])
        except (KeyError, TypeError) as err:
            raise VaultAuthExpired("Vault did not return a token after login") from err

    def _login_endpoint(self):
        raise NotImplementedError

    def _login_payload(self):
        raise NotImplementedError


class VaultUserpassAuth(VaultLoginAuth):
    """
    Username/password authentication
    """

    default_mount = "userpass"

    def __init__(self, username, password, client, mount=None, token=None):
        if not username or not password:
            raise VaultInvocationError("userpass authentication requires username and password")
        self.username = username
        self.password = password
        super().__init__(client, mount=mount, token=token)

    def _login_endpoint(self):
        return f"auth/{self.mount}/login/{self.username}"

    def _login_payload(self):
        return {"password": self.password}


class VaultAppRoleAuth(VaultLoginAuth):
    """
    AppRole authentication. ``secret_id`` is optional since
    AppRoles can be configured without ``bind_secret_id``.
    """

    default_mount = "approle"

    def __init__(self, role_id, client, secret_id=None, mount=None, token=None):
        if not role_id:
            raise VaultInvocationError("approle authentication requires a role_id")
        self.role_id = role_id
        self.secret_id = secret_id
        super().__init__(client, mount=mount, token=token)

    def _login_endpoint(self):
        return f"auth/{self.mount}/login"

    def _login_payload(self):
        payload = {"role_id": self.role_id}
        if self.secret_id is not None:
            payload["secret_id"] = self.secret_id
        return payload

"""
Models for Vault leases, in particular authentication tokens
"""

import copy
import logging
import time

from vaultpki.exceptions import VaultInvocationError
from vaultpki.helpers import iso_to_timestamp
from vaultpki.helpers import timestring_map

log = logging.getLogger(__name__)


def _to_timestamp(value, default):
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return iso_to_timestamp(value)


class DurationMixin:
    """
    Mixin that handles expiration with time.
    """

    def __init__(
        self,
        renewable=False,
        duration=0,
        creation_time=None,
        expire_time=None,
        **kwargs,
    ):
        if "lease_duration" in kwargs:
            duration = kwargs.pop("lease_duration")
        self.renewable = renewable
        self.duration = duration
        self.creation_time = _to_timestamp(creation_time, round(time.time()))
        self.expire_time = _to_timestamp(expire_time, round(time.time()) + duration)
        super().__init__(**kwargs)

    def is_renewable(self):
        """
        Checks whether the lease is renewable
        """
        return self.renewable

    def is_valid_for(self, valid_for=0, blur=0):
        """
        Checks whether the entity is valid

        valid_for
            Check whether the entity will still be valid in the future.
            This can be an integer, which will be interpreted as seconds, or a
            time string using the same format as Vault does:
            Suffix ``s`` for seconds, ``m`` for minutes, ``h`` for hours, ``d`` for days.
            Defaults to 0.

        blur
            Allow undercutting ``valid_for`` for this amount of seconds.
            Defaults to 0.
        """
        if not self.duration:
            # Vault reports a TTL of 0 for tokens that never expire (root tokens)
            return True
        delta = self.expire_time - time.time() - timestring_map(valid_for)
        if delta >= 0:
            return True
        return abs(delta) <= blur

    @property
    def ttl_left(self):
        """
        Return the time in seconds until the lease expires.
        """
        return max(self.expire_time - round(time.time()), 0)


class UseCountMixin:
    """
    Mixin that handles expiration with number of uses.
    """

    def __init__(self, num_uses=0, use_count=0, **kwargs):
        self.num_uses = num_uses
        self.use_count = use_count
        super().__init__(**kwargs)

    def used(self):
        """
        Increment the use counter by one.
        """
        self.use_count += 1

    def has_uses_left(self, uses=1):
        """
        Check whether this entity has uses left.
        """
        return self.num_uses == 0 or self.num_uses - (self.use_count + uses) >= 0


class DropInitKwargsMixin:
    """
    Mixin that breaks the chain of passing unhandled kwargs up the MRO.
    Vault responses carry many fields we do not care about (policies, metadata...).
    """

    def __init__(self, *args, **kwargs):  # pylint: disable=unused-argument
        super().__init__(*args)


class BaseLease(DurationMixin, DropInitKwargsMixin):
    """
    Base class for leases that expire with time.
    """

    def __init__(self, lease_id, **kwargs):
        self.id = self.lease_id = lease_id
        super().__init__(**kwargs)

    def __str__(self):
        return self.id

    def __repr__(self):
        # never leak the secret part
        return f"<{type(self).__name__} ttl_left={self.ttl_left} renewable={self.renewable}>"

    def __eq__(self, other):
        try:
            data = other.__dict__
        except AttributeError:
            data = other
        return data == self.__dict__

    def with_renewed(self, **kwargs):
        """
        Partially update the contained data after lease renewal.
        """
        attrs = copy.copy(self.__dict__)
        # ensure expire_time is reset properly
        attrs.pop("expire_time")
        attrs.update(kwargs)
        return type(self)(**attrs)

    def to_dict(self):
        """
        Return a dict of all contained attributes.
        """
        return copy.deepcopy(self.__dict__)


class VaultToken(UseCountMixin, BaseLease):
    """
    Data object representing an authentication token.

    Accepts the ``auth`` section of login/renewal responses
    (``client_token``, ``lease_duration``...) as well as plain values.
    """

    def __init__(self, accessor=None, **kwargs):
        if "client_token" in kwargs:
            # Ensure response data from Vault is accepted as well
            kwargs["lease_id"] = kwargs.pop("client_token")
        if not kwargs.get("lease_id"):
            raise VaultInvocationError("A token requires a non-empty token string")
        self.accessor = accessor
        super().__init__(**kwargs)

    def is_valid(self, valid_for=0, uses=1):
        """
        Checks whether the token is valid for an amount of time and number of uses.

        valid_for
            Check whether the token will still be valid in the future.
            This can be an integer, which will be interpreted as seconds, or a
            time string using the same format as Vault does.
            Defaults to 0.

        uses
            Check whether the token has at least this number of uses left. Defaults to 1.
        """
        return self.is_valid_for(valid_for) and self.has_uses_left(uses)

    def is_renewable(self):
        """
        Check whether the token is renewable, which requires it
        to be currently valid for at least two uses and renewable.
        """
        # Renewing a token deducts a use, hence it does not make sense to
        # renew a token on the last use
        return self.renewable and self.is_valid(uses=2)

    def payload(self):
        """
        Return the payload to use for POST requests using this token.
        """
        return {"token": str(self)}

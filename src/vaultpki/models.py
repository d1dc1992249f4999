"""
Data objects returned by the PKI and system backend engines.

Results are built from the ``data`` section of Vault responses. They
only hold what Vault returned, nothing is written anywhere by this package.
"""

import copy
import re
from datetime import datetime
from datetime import timezone

from cryptography import x509
from cryptography.x509.oid import NameOID

from vaultpki.exceptions import VaultInvocationError
from vaultpki.helpers import format_serial
from vaultpki.helpers import serial_to_int
from vaultpki.helpers import timestring_map

PRIVATE_KEY_PEM = re.compile(
    r"-----BEGIN ((?:[A-Z]+ )*)PRIVATE KEY-----.+?-----END \1PRIVATE KEY-----\s*", re.DOTALL
)


def load_certificate(pem):
    """
    Parse a PEM-encoded certificate. Only the first certificate is
    considered if a chain is passed.
    """
    if isinstance(pem, str):
        pem = pem.encode()
    try:
        return x509.load_pem_x509_certificate(pem)
    except ValueError as err:
        raise VaultInvocationError(f"Could not load PEM-encoded certificate: {err}") from err


def load_csr(pem):
    """
    Parse a PEM-encoded certificate signing request.
    """
    if not isinstance(pem, (str, bytes)) or not pem.strip():
        raise VaultInvocationError("CSR must be a non-empty PEM string")
    if isinstance(pem, str):
        pem = pem.encode()
    if b"CERTIFICATE REQUEST-----" not in pem:
        raise VaultInvocationError("CSR is not PEM-encoded")
    try:
        return x509.load_pem_x509_csr(pem)
    except ValueError as err:
        raise VaultInvocationError(f"Could not load PEM-encoded CSR: {err}") from err


def get_common_name(name):
    """
    Return the first common name of an ``x509.Name`` or None.
    """
    attrs = name.get_attributes_for_oid(NameOID.COMMON_NAME)
    if not attrs:
        return None
    return attrs[0].value


def _not_valid_before(cert):
    try:
        return cert.not_valid_before_utc
    except AttributeError:
        return cert.not_valid_before.replace(tzinfo=timezone.utc)


def _not_valid_after(cert):
    try:
        return cert.not_valid_after_utc
    except AttributeError:
        return cert.not_valid_after.replace(tzinfo=timezone.utc)


class IssuedCertificate:
    """
    Base class for certificates returned by Vault.
    """

    def __init__(
        self,
        certificate,
        issuing_ca=None,
        ca_chain=None,
        serial_number=None,
        expiration=None,
        **kwargs,
    ):  # pylint: disable=unused-argument
        if not certificate:
            raise VaultInvocationError("Vault did not return a certificate")
        self.certificate = certificate
        self.issuing_ca = issuing_ca
        self.ca_chain = list(ca_chain or [])
        self.expiration = expiration
        if serial_number is None:
            serial_number = self.load().serial_number
        self.serial_number = format_serial(serial_number)

    def __repr__(self):
        return f"<{type(self).__name__} serial_number={self.serial_number}>"

    def load(self):
        """
        Return the certificate as a ``cryptography`` object.
        """
        return load_certificate(self.certificate)

    @property
    def common_name(self):
        return get_common_name(self.load().subject)

    @property
    def not_valid_after(self):
        return _not_valid_after(self.load())

    @property
    def ttl(self):
        """
        The validity period of the certificate in seconds.
        """
        cert = self.load()
        return int((_not_valid_after(cert) - _not_valid_before(cert)).total_seconds())

    def ttl_left(self, now=None):
        now = now or datetime.now(timezone.utc)
        return max(int((self.not_valid_after - now).total_seconds()), 0)

    def to_dict(self):
        return {
            "certificate": self.certificate,
            "issuing_ca": self.issuing_ca,
            "ca_chain": copy.copy(self.ca_chain),
            "serial_number": self.serial_number,
            "expiration": self.expiration,
        }


class SignedCertificate(IssuedCertificate):
    """
    Result of signing a caller-supplied CSR. The private key
    never left the caller, so there is none here.
    """


class GeneratedCertificate(IssuedCertificate):
    """
    Result of having Vault generate a key pair and a certificate.

    The private key can be taken exactly once with :py:meth:`take_private_key`,
    after which it is dropped from this object. It is excluded from
    ``repr`` and ``to_dict``. With the ``pem_bundle`` format, Vault prepends
    the key to ``certificate``. It is moved out of there as well.
    """

    def __init__(self, certificate, private_key=None, private_key_type=None, **kwargs):
        if isinstance(certificate, str):
            bundled_keys = [
                match.group(0).strip() for match in PRIVATE_KEY_PEM.finditer(certificate)
            ]
            if bundled_keys:
                certificate = PRIVATE_KEY_PEM.sub("", certificate)
                private_key = private_key or bundled_keys[0]
        super().__init__(certificate, **kwargs)
        self._private_key = private_key
        self.private_key_type = private_key_type

    @property
    def has_private_key(self):
        return self._private_key is not None

    def take_private_key(self):
        """
        Return the private key and forget it.
        Raises VaultInvocationError if it was already taken.
        """
        if self._private_key is None:
            raise VaultInvocationError("The private key has already been taken")
        private_key, self._private_key = self._private_key, None
        return private_key


class RootCAConfig(GeneratedCertificate):
    """
    A generated root CA. ``private_key`` is only available
    when the root was generated with type ``exported``.
    """

    def __init__(
        self,
        certificate,
        issuer_id=None,
        issuer_name=None,
        key_id=None,
        key_name=None,
        **kwargs,
    ):
        super().__init__(certificate, **kwargs)
        self.issuer_id = issuer_id
        self.issuer_name = issuer_name
        self.key_id = key_id
        self.key_name = key_name

    def to_dict(self):
        ret = super().to_dict()
        ret.update(
            issuer_id=self.issuer_id,
            issuer_name=self.issuer_name,
            key_id=self.key_id,
            key_name=self.key_name,
        )
        return ret


class CertificateRevocationList:
    """
    The CRL of a PKI engine. Membership checks accept serial numbers
    in any format understood by :py:func:`vaultpki.helpers.serial_to_int`.
    """

    def __init__(self, pem):
        self.pem = pem or ""
        self._crl = None
        self.revoked_serials = frozenset()
        if self.pem.strip():
            try:
                self._crl = x509.load_pem_x509_crl(self.pem.encode())
            except ValueError as err:
                raise VaultInvocationError(f"Could not load PEM-encoded CRL: {err}") from err
            self.revoked_serials = frozenset(rev.serial_number for rev in self._crl)

    def __contains__(self, serial):
        try:
            return serial_to_int(serial) in self.revoked_serials
        except VaultInvocationError:
            return False

    def __iter__(self):
        return iter(sorted(format_serial(serial) for serial in self.revoked_serials))

    def __len__(self):
        return len(self.revoked_serials)

    def __repr__(self):
        return f"<CertificateRevocationList revoked={len(self)}>"

    @property
    def issuer(self):
        if self._crl is None:
            return None
        return self._crl.issuer.rfc4514_string()

    @property
    def last_update(self):
        if self._crl is None:
            return None
        try:
            return self._crl.last_update_utc
        except AttributeError:
            return self._crl.last_update.replace(tzinfo=timezone.utc)

    @property
    def next_update(self):
        if self._crl is None:
            return None
        try:
            return self._crl.next_update_utc
        except AttributeError:
            next_update = self._crl.next_update
            return next_update.replace(tzinfo=timezone.utc) if next_update else None


class PKIRole:
    """
    Configuration of a PKI role as reported by Vault.
    Unknown parameters are kept in ``data``.
    """

    def __init__(self, name, **data):
        self.name = name
        self.data = data

    def __repr__(self):
        return f"<PKIRole {self.name}>"

    def __getitem__(self, key):
        return self.data[key]

    def get(self, key, default=None):
        return self.data.get(key, default)

    @property
    def allowed_domains(self):
        return list(self.data.get("allowed_domains") or [])

    @property
    def allow_subdomains(self):
        return bool(self.data.get("allow_subdomains", False))

    @property
    def max_ttl(self):
        """
        Maximum certificate TTL in seconds. 0 means the mount's maximum applies.
        """
        return int(timestring_map(self.data.get("max_ttl") or 0))

    @property
    def ttl(self):
        return int(timestring_map(self.data.get("ttl") or 0))

    def to_dict(self):
        return copy.deepcopy(self.data)


class EngineEnableOptions:
    """
    Options for mounting a secret engine.

    default_lease_ttl / max_lease_ttl
        Integers (seconds) or time strings like ``72h``.

    options
        Engine-specific options, e.g. ``{"version": "2"}`` for KV.
    """

    CONFIG_KEYS = (
        "default_lease_ttl",
        "max_lease_ttl",
        "force_no_cache",
        "audit_non_hmac_request_keys",
        "audit_non_hmac_response_keys",
        "listing_visibility",
        "passthrough_request_headers",
        "allowed_response_headers",
        "plugin_version",
    )

    def __init__(self, options=None, local=None, seal_wrap=None, **config):
        unknown = set(config).difference(self.CONFIG_KEYS)
        if unknown:
            raise VaultInvocationError(f"Unknown mount config options: {sorted(unknown)}")
        self.config = {k: v for k, v in config.items() if v is not None}
        self.options = dict(options or {})
        self.local = local
        self.seal_wrap = seal_wrap

    @property
    def max_lease_ttl(self):
        return self.config.get("max_lease_ttl")

    @property
    def default_lease_ttl(self):
        return self.config.get("default_lease_ttl")

    def to_payload(self):
        payload = {}
        if self.config:
            payload["config"] = copy.deepcopy(self.config)
        if self.options:
            payload["options"] = copy.deepcopy(self.options)
        if self.local is not None:
            payload["local"] = self.local
        if self.seal_wrap is not None:
            payload["seal_wrap"] = self.seal_wrap
        return payload


class MountInfo:
    """
    Information about a mounted secret engine (``sys/mounts``).
    """

    def __init__(
        self,
        path,
        type,
        description="",
        config=None,
        options=None,
        accessor=None,
        local=False,
        seal_wrap=False,
        **kwargs,
    ):  # pylint: disable=redefined-builtin,unused-argument
        self.path = path.strip("/")
        self.type = type
        self.description = description or ""
        self.config = dict(config or {})
        self.options = dict(options or {})
        self.accessor = accessor
        self.local = local
        self.seal_wrap = seal_wrap

    def __repr__(self):
        return f"<MountInfo {self.path} type={self.type}>"

    @property
    def max_lease_ttl(self):
        return self.config.get("max_lease_ttl")

    @property
    def default_lease_ttl(self):
        return self.config.get("default_lease_ttl")

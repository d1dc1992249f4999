"""
Manage a single Vault PKI secret engine.

All operations are bound to the mount path the engine was created for.
API documentation: https://developer.hashicorp.com/vault/api-docs/secret/pki
"""

import logging
import re
from typing import Tuple

from vaultpki.exceptions import VaultException
from vaultpki.exceptions import VaultInvocationError
from vaultpki.exceptions import VaultNotFoundError
from vaultpki.exceptions import VaultPolicyViolationError
from vaultpki.helpers import format_serial
from vaultpki.helpers import normalize_mount
from vaultpki.models import CertificateRevocationList
from vaultpki.models import GeneratedCertificate
from vaultpki.models import PKIRole
from vaultpki.models import RootCAConfig
from vaultpki.models import SignedCertificate
from vaultpki.models import get_common_name
from vaultpki.models import load_csr

log = logging.getLogger(__name__)

CERT_FORMATS = ("pem", "pem_bundle")

GENERATION_TYPES = ("internal", "exported", "existing", "kms")

# Substrings of Vault error messages that indicate the request
# was rejected by role or issuer constraints
POLICY_VIOLATION_MARKERS = (
    "not allowed by this role",
    "not allowed in this role",
    "are not allowed",
    "not allowed for issuing",
    "beyond the expiration",
)

_ROLE_NOT_FOUND = re.compile(r"unknown role|no role found|role \S+ (?:does not exist|not found)")


def _translate(err, serial=False):
    """
    Vault reports most PKI failures as HTTP 400. Map them onto
    more specific exceptions where the message allows it.
    """
    if type(err) is not VaultInvocationError:  # pylint: disable=unidiomatic-typecheck
        return err
    msg = str(err).lower()
    if _ROLE_NOT_FOUND.search(msg) or "no handler for route" in msg:
        return VaultNotFoundError(str(err))
    if serial and "not found" in msg:
        return VaultNotFoundError(str(err))
    if any(marker in msg for marker in POLICY_VIOLATION_MARKERS):
        return VaultPolicyViolationError(str(err))
    return err


def _reraise(err, serial=False):
    translated = _translate(err, serial=serial)
    if translated is err:
        raise err
    raise translated from err


class VaultPKISecretEngine:
    """
    Client for one PKI secret engine mount.

    client
        An authenticated Vault client. It is shared, this object
        does not keep any other state.

    mount
        The mount path the PKI engine is enabled at. Defaults to ``pki``.
    """

    def __init__(self, client, mount="pki"):
        self.client = client
        self.mount = normalize_mount(mount)

    def __repr__(self):
        return f"<VaultPKISecretEngine mount={self.mount}>"

    def _endpoint(self, *parts):
        return "/".join((self.mount,) + tuple(str(part).strip("/") for part in parts))

    def generate_root(
        self,
        common_name,
        type="internal",  # pylint: disable=redefined-builtin
        issuer_name=None,
        key_name=None,
        ttl=None,
        key_type="rsa",
        key_bits=0,
        max_path_length=-1,
        **kwargs,
    ):
        """
        Generate a new root CA for this engine.
        Returns a :py:class:`~vaultpki.models.RootCAConfig`.

        .. warning::
            Calling this repeatedly generates a new CA every time. On Vault
            versions without multi-issuer support, the previous CA is replaced.

        common_name
            The common name of the CA certificate.

        type
            ``internal`` (default) keeps the private key inside Vault,
            ``exported`` returns it once.

        issuer_name / key_name
            Names for the new issuer and key. ``default`` is reserved.

        ttl
            Validity of the CA certificate, e.g. ``87600h``.

        key_type / key_bits
            Key parameters, e.g. ``rsa``/``4096`` or ``ec``/``256``.

        max_path_length
            Maximum path length to encode in the CA certificate.
            ``-1`` (default) means no limit.

        kwargs
            Any other parameter understood by the API.
        """
        if type not in GENERATION_TYPES:
            raise VaultInvocationError(f"type must be one of {GENERATION_TYPES}, got `{type}`")
        if issuer_name == "default":
            raise VaultInvocationError("`default` is a reserved issuer name")
        if key_name == "default":
            raise VaultInvocationError("`default` is a reserved key name")

        payload = {k: v for k, v in kwargs.items() if not k.startswith("_")}
        payload["common_name"] = common_name
        payload["key_type"] = key_type
        if issuer_name is not None:
            payload["issuer_name"] = issuer_name
        if key_name is not None:
            payload["key_name"] = key_name
        if ttl is not None:
            payload["ttl"] = ttl
        if key_bits > 0:
            payload["key_bits"] = key_bits
        if max_path_length > -1:
            payload["max_path_length"] = max_path_length

        try:
            res = self.client.post(self._endpoint("root", "generate", type), payload=payload)
        except VaultException as err:
            _reraise(err)
        log.debug(f"Generated a new root CA `{common_name}` at mount `{self.mount}`")
        return RootCAConfig(**res["data"])

    def delete_root(self):
        """
        Delete the CA of this engine (all issuers and keys on multi-issuer Vault).
        """
        try:
            self.client.delete(self._endpoint("root"))
        except VaultException as err:
            _reraise(err)

    def read_ca(self):
        """
        Return the PEM-encoded default CA certificate.
        """
        try:
            res = self.client.request("GET", self._endpoint("cert", "ca"), is_unauthd=True)
        except VaultException as err:
            _reraise(err)
        return res["data"]["certificate"]

    def read_ca_chain(self):
        """
        Return the PEM-encoded CA chain of the default issuer.
        """
        try:
            res = self.client.request("GET", self._endpoint("cert", "ca_chain"), is_unauthd=True)
        except VaultException as err:
            _reraise(err)
        return res["data"].get("ca_chain") or res["data"]["certificate"]

    def list_roles(self):
        """
        List configured roles. Returns an empty list if there are none.
        """
        try:
            return self.client.list(self._endpoint("roles"))["data"]["keys"]
        except VaultNotFoundError:
            return []
        except VaultException as err:
            _reraise(err)

    def read_role(self, name):
        """
        Read a role. Returns a :py:class:`~vaultpki.models.PKIRole`
        or None if it does not exist.
        """
        try:
            res = self.client.get(self._endpoint("roles", name))
        except VaultNotFoundError:
            return None
        except VaultException as err:
            _reraise(err)
        return PKIRole(name, **res["data"])

    def update_role(
        self,
        name,
        allowed_domains=None,
        allow_subdomains=None,
        allow_bare_domains=None,
        allow_any_name=None,
        allow_localhost=None,
        ttl=None,
        max_ttl=None,
        key_type=None,
        key_bits=None,
        server_flag=None,
        client_flag=None,
        key_usage=None,
        no_store=None,
        require_cn=None,
        issuer_ref=None,
        merge=False,
        **kwargs,
    ):
        """
        Create or update a role.

        By default, the role is written as a whole: parameters that are not
        passed are reset to Vault's defaults. With ``merge=True``, an existing
        role is patched instead (requires Vault 1.11+).

        name
            The name of the role.

        allowed_domains
            Domains this role is allowed to issue certificates for. A single
            string is accepted as well.

        allow_subdomains
            Allow issuing certificates for subdomains of ``allowed_domains``.

        allow_bare_domains
            Allow issuing certificates for ``allowed_domains`` themselves.

        allow_any_name
            Allow any common name. ``allowed_domains`` has no effect then.

        allow_localhost
            Allow ``localhost`` as common name.

        ttl / max_ttl
            Default and maximum validity of issued certificates. Vault
            never issues a certificate outliving ``max_ttl``.

        key_type / key_bits
            Key parameters for generated or accepted keys.

        server_flag / client_flag
            Set the serverAuth/clientAuth extended key usage.

        key_usage
            Allowed key usages, e.g. ``["DigitalSignature", "KeyEncipherment"]``.

        no_store
            Do not store issued certificates in Vault. Revocation by serial
            number is impossible for such certificates.

        require_cn
            Set to false to make the common name optional.

        issuer_ref
            Issuer to use with this role instead of the default one.

        kwargs
            Any other parameter understood by the API.
        """
        payload = {k: v for k, v in kwargs.items() if not k.startswith("_")}

        if allowed_domains is not None:
            if not isinstance(allowed_domains, list):
                allowed_domains = [allowed_domains]
            payload["allowed_domains"] = allowed_domains
        if key_usage is not None:
            if not isinstance(key_usage, list):
                key_usage = [key_usage]
            payload["key_usage"] = key_usage
        for param, value in (
            ("allow_subdomains", allow_subdomains),
            ("allow_bare_domains", allow_bare_domains),
            ("allow_any_name", allow_any_name),
            ("allow_localhost", allow_localhost),
            ("ttl", ttl),
            ("max_ttl", max_ttl),
            ("key_type", key_type),
            ("key_bits", key_bits),
            ("server_flag", server_flag),
            ("client_flag", client_flag),
            ("no_store", no_store),
            ("require_cn", require_cn),
            ("issuer_ref", issuer_ref),
        ):
            if value is not None:
                payload[param] = value

        method = "POST"
        if merge and self.read_role(name) is not None:
            method = "PATCH"

        try:
            self.client.request(method, self._endpoint("roles", name), payload=payload)
        except VaultException as err:
            _reraise(err)
        log.debug(f"Wrote role `{name}` at mount `{self.mount}`")

    def delete_role(self, name):
        """
        Delete a role. Returns False if it did not exist.
        """
        # Vault answers 204 regardless
        if self.read_role(name) is None:
            return False
        try:
            self.client.delete(self._endpoint("roles", name))
        except VaultNotFoundError:
            return False
        except VaultException as err:
            _reraise(err)
        return True

    def generate_certificate(
        self,
        role_name,
        common_name,
        issuer_ref=None,
        alt_names=None,
        ttl=None,
        format="pem",  # pylint: disable=redefined-builtin
        exclude_cn_from_sans=False,
        **kwargs,
    ):
        """
        Have Vault generate a key pair and issue a certificate for it.
        Returns a :py:class:`~vaultpki.models.GeneratedCertificate`, which
        hands out the private key exactly once.

        Raises VaultNotFoundError if the role does not exist and
        VaultPolicyViolationError if the role does not allow the request.

        role_name
            The role to issue the certificate under.

        common_name
            The requested common name.

        issuer_ref
            Issue with this issuer instead of the role's/default one.

        alt_names
            Subject alternative names, either a dict (``{"DNS": "a.example.com"}``)
            or a list of ``<type>:<value>`` strings.

        ttl
            Requested validity. Vault caps it at the role's ``max_ttl``.

        format
            ``pem`` (default) or ``pem_bundle``.

        exclude_cn_from_sans
            Do not add the common name to the DNS SANs.

        kwargs
            Any other parameter understood by the API.
        """
        payload = self._issue_payload(
            common_name, alt_names, ttl, format, exclude_cn_from_sans, kwargs
        )
        endpoint = self._endpoint("issue", role_name)
        if issuer_ref is not None:
            endpoint = self._endpoint("issuer", issuer_ref, "issue", role_name)

        try:
            res = self.client.post(endpoint, payload=payload)
        except VaultException as err:
            _reraise(err)
        cert = GeneratedCertificate(**res["data"])
        log.debug(f"Issued certificate {cert.serial_number} for `{common_name}` via `{role_name}`")
        return cert

    def sign_request(
        self,
        role_name,
        csr,
        common_name=None,
        issuer_ref=None,
        alt_names=None,
        ttl=None,
        format="pem",  # pylint: disable=redefined-builtin
        exclude_cn_from_sans=False,
        sign_verbatim=False,
        **kwargs,
    ):
        """
        Sign a caller-supplied CSR. Returns a :py:class:`~vaultpki.models.SignedCertificate`,
        which never contains a private key.

        Raises VaultInvocationError for malformed CSRs, VaultNotFoundError if the role
        does not exist and VaultPolicyViolationError if the role does not allow the request.

        role_name
            The role to sign the certificate under.

        csr
            The PEM-encoded certificate signing request.

        common_name
            The requested common name. Defaults to the common name in the CSR.

        sign_verbatim
            Use the ``sign-verbatim`` endpoint, which does not restrict
            the certificate by role constraints.

            .. warning::
                This option is using a potentially dangerous endpoint. Be careful
                when using that option, as roles are not restricting what can
                be issued anymore.

        For the other parameters, see :py:meth:`generate_certificate`.
        """
        parsed = load_csr(csr)
        if common_name is None:
            common_name = get_common_name(parsed.subject)
        payload = self._issue_payload(
            common_name, alt_names, ttl, format, exclude_cn_from_sans, kwargs
        )
        if common_name is None:
            payload.pop("common_name")
        payload["csr"] = csr if isinstance(csr, str) else csr.decode()

        sign = "sign-verbatim" if sign_verbatim else "sign"
        endpoint = self._endpoint(sign, role_name)
        if issuer_ref is not None:
            endpoint = self._endpoint("issuer", issuer_ref, sign, role_name)

        try:
            res = self.client.post(endpoint, payload=payload)
        except VaultException as err:
            _reraise(err)
        data = {
            k: v for k, v in res["data"].items() if k not in ("private_key", "private_key_type")
        }
        return SignedCertificate(**data)

    def revoke_certificate(self, serial_number):
        """
        Revoke a certificate by its serial number and have Vault rebuild the CRL.
        Revoking an already revoked certificate succeeds.

        serial_number
            Colon-separated hex as reported by Vault, plain hex or an integer.

        Raises VaultNotFoundError if no certificate with this serial was issued
        (or it was issued under a ``no_store`` role).
        """
        payload = {"serial_number": format_serial(serial_number)}
        try:
            res = self.client.post(self._endpoint("revoke"), payload=payload)
        except VaultException as err:
            _reraise(err, serial=True)
        log.debug(f"Revoked certificate {payload['serial_number']} at mount `{self.mount}`")
        if isinstance(res, dict):
            return res.get("data", {}).get("revocation_time")
        return None

    def read_crl(self):
        """
        Return the current :py:class:`~vaultpki.models.CertificateRevocationList`
        of the default issuer.
        """
        try:
            res = self.client.request("GET", self._endpoint("cert", "crl"), is_unauthd=True)
        except VaultException as err:
            _reraise(err)
        return CertificateRevocationList(res["data"]["certificate"])

    def rotate_crl(self):
        """
        Force a rebuild of the CRL.
        """
        try:
            res = self.client.get(self._endpoint("crl", "rotate"))
        except VaultException as err:
            _reraise(err)
        return bool(res["data"].get("success", True)) if isinstance(res, dict) else True

    def configure_crl(self, expiry=None, disable=None, auto_rebuild=None, **kwargs):
        """
        Configure CRL generation, e.g. ``expiry="72h"``.
        """
        payload = {k: v for k, v in kwargs.items() if not k.startswith("_")}
        if expiry is not None:
            payload["expiry"] = expiry
        if disable is not None:
            payload["disable"] = disable
        if auto_rebuild is not None:
            payload["auto_rebuild"] = auto_rebuild
        try:
            self.client.post(self._endpoint("config", "crl"), payload=payload)
        except VaultException as err:
            _reraise(err)

    def list_certificates(self):
        """
        List serial numbers of issued (and stored) certificates.
        """
        try:
            return self.client.list(self._endpoint("certs"))["data"]["keys"]
        except VaultNotFoundError:
            return []
        except VaultException as err:
            _reraise(err)

    def read_certificate(self, serial_number):
        """
        Return a PEM-encoded issued certificate.
        Raises VaultNotFoundError for unknown serial numbers.
        """
        serial = format_serial(serial_number)
        try:
            res = self.client.request("GET", self._endpoint("cert", serial), is_unauthd=True)
        except VaultException as err:
            _reraise(err, serial=True)
        certificate = (res.get("data") or {}).get("certificate")
        if not certificate:
            raise VaultNotFoundError(f"certificate with serial {serial} not found")
        return certificate

    def configure_urls(
        self, issuing_certificates=None, crl_distribution_points=None, ocsp_servers=None
    ):
        """
        Set the URLs to encode in issued certificates.
        """
        payload = {}
        if issuing_certificates is not None:
            payload["issuing_certificates"] = issuing_certificates
        if crl_distribution_points is not None:
            payload["crl_distribution_points"] = crl_distribution_points
        if ocsp_servers is not None:
            payload["ocsp_servers"] = ocsp_servers
        try:
            self.client.post(self._endpoint("config", "urls"), payload=payload)
        except VaultException as err:
            _reraise(err)

    def read_urls(self):
        """
        Fetch the URLs to be encoded in generated certificates.
        """
        try:
            return self.client.get(self._endpoint("config", "urls"))["data"]
        except VaultException as err:
            _reraise(err)

    def generate_intermediate_csr(
        self,
        common_name,
        type="internal",  # pylint: disable=redefined-builtin
        key_type="rsa",
        key_bits=0,
        key_name=None,
        **kwargs,
    ):
        """
        Generate a key and a CSR for an intermediate CA. The CSR has to be signed by
        the parent CA (see :py:meth:`sign_intermediate`) and imported via
        :py:meth:`set_signed_intermediate`.
        Returns the response data (``csr``, ``key_id``, and ``private_key`` if
        type is ``exported``).
        """
        if type not in GENERATION_TYPES:
            raise VaultInvocationError(f"type must be one of {GENERATION_TYPES}, got `{type}`")
        payload = {k: v for k, v in kwargs.items() if not k.startswith("_")}
        payload["common_name"] = common_name
        payload["key_type"] = key_type
        if key_bits > 0:
            payload["key_bits"] = key_bits
        if key_name is not None:
            payload["key_name"] = key_name
        try:
            res = self.client.post(
                self._endpoint("intermediate", "generate", type), payload=payload
            )
        except VaultException as err:
            _reraise(err)
        return res["data"]

    def sign_intermediate(
        self,
        csr,
        common_name=None,
        ttl=None,
        max_path_length=-1,
        format="pem",  # pylint: disable=redefined-builtin
        issuer_ref=None,
        **kwargs,
    ):
        """
        Sign an intermediate CA CSR with this engine's CA.
        Returns a :py:class:`~vaultpki.models.SignedCertificate`.
        """
        parsed = load_csr(csr)
        if format not in CERT_FORMATS:
            raise VaultInvocationError(f"format must be one of {CERT_FORMATS}, got `{format}`")
        payload = {k: v for k, v in kwargs.items() if not k.startswith("_")}
        payload["csr"] = csr if isinstance(csr, str) else csr.decode()
        payload["common_name"] = common_name or get_common_name(parsed.subject)
        payload["format"] = format
        if ttl is not None:
            payload["ttl"] = ttl
        if max_path_length > -1:
            payload["max_path_length"] = max_path_length
        endpoint = self._endpoint("root", "sign-intermediate")
        if issuer_ref is not None:
            endpoint = self._endpoint("issuer", issuer_ref, "sign-intermediate")
        try:
            res = self.client.post(endpoint, payload=payload)
        except VaultException as err:
            _reraise(err)
        return SignedCertificate(**res["data"])

    def set_signed_intermediate(self, certificate):
        """
        Import the signed intermediate CA certificate (optionally with its chain).
        """
        try:
            res = self.client.post(
                self._endpoint("intermediate", "set-signed"), payload={"certificate": certificate}
            )
        except VaultException as err:
            _reraise(err)
        if isinstance(res, dict):
            return res.get("data") or {}
        return {}

    def tidy(self, tidy_cert_store=True, tidy_revoked_certs=True, safety_buffer=None, **kwargs):
        """
        Start removing expired certificates from storage and the CRL.
        """
        payload = {k: v for k, v in kwargs.items() if not k.startswith("_")}
        payload["tidy_cert_store"] = tidy_cert_store
        payload["tidy_revoked_certs"] = tidy_revoked_certs
        if safety_buffer is not None:
            payload["safety_buffer"] = safety_buffer
        try:
            self.client.post(self._endpoint("tidy"), payload=payload)
        except VaultException as err:
            _reraise(err)

    def _issue_payload(self, common_name, alt_names, ttl, format, exclude_cn_from_sans, extra):
        # pylint: disable=redefined-builtin
        if format not in CERT_FORMATS:
            raise VaultInvocationError(f"format must be one of {CERT_FORMATS}, got `{format}`")
        payload = {k: v for k, v in extra.items() if not k.startswith("_")}
        payload["common_name"] = common_name
        if ttl is not None:
            payload["ttl"] = ttl
        payload["format"] = format
        payload["exclude_cn_from_sans"] = exclude_cn_from_sans

        if alt_names is not None:
            dns_sans, ip_sans, uri_sans, other_sans = _split_sans(alt_names)
            payload["alt_names"] = ",".join(dns_sans)
            payload["ip_sans"] = ",".join(ip_sans)
            payload["uri_sans"] = ",".join(uri_sans)
            payload["other_sans"] = ",".join(other_sans)
        return payload


def _split_sans(sans) -> Tuple[list, list, list, list]:
    dns_sans = []
    ip_sans = []
    uri_sans = []
    other_sans = []

    try:
        if isinstance(sans, list):
            sans = [x.split(":", 1) for x in sans]
        elif isinstance(sans, dict):
            sans = list(sans.items())
        else:
            raise ValueError(f"expected list or dict, got {type(sans).__name__}")

        for k, v in sans:
            if k.upper() in ("DNS", "EMAIL"):
                dns_sans.append(v)
            elif k.upper() == "IP":
                ip_sans.append(v)
            elif k.upper() == "URI":
                uri_sans.append(v)
            else:
                other_sans.append(f"{k};UTF8:{v}")
    except ValueError as err:
        raise VaultInvocationError(
            f"SAN is not in correct format. Must be in format <type>:<value>: {err}"
        ) from err

    return dns_sans, ip_sans, uri_sans, other_sans

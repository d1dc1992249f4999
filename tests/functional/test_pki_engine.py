from datetime import datetime
from datetime import timezone

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import serialization

from vaultpki.exceptions import VaultInvocationError
from vaultpki.exceptions import VaultNotFoundError
from vaultpki.exceptions import VaultPolicyViolationError
from vaultpki.helpers import serial_to_int
from vaultpki.models import CertificateRevocationList
from vaultpki.models import GeneratedCertificate
from vaultpki.models import RootCAConfig
from vaultpki.models import SignedCertificate
from tests.support.helpers import make_csr


@pytest.fixture
def example_role(pki, root_ca):  # pylint: disable=unused-argument
    pki.update_role(
        "example-dot-com",
        allowed_domains=["my-website.com"],
        allow_subdomains=True,
        max_ttl="72h",
        key_type="ec",
        key_bits=256,
    )
    return "example-dot-com"


def test_end_to_end(pki, example_role):
    cert = pki.generate_certificate(example_role, "a-subdomain.my-website.com")
    assert isinstance(cert, GeneratedCertificate)
    assert cert.common_name == "a-subdomain.my-website.com"
    assert cert.ttl_left() <= 72 * 3600
    assert cert.has_private_key


@pytest.mark.parametrize("ttl", [None, "1h", "72h", "100h", "8000h"])
def test_generated_certificate_ttl_bounded_by_role_max_ttl(pki, example_role, ttl):
    cert = pki.generate_certificate(example_role, "www.my-website.com", ttl=ttl)
    assert cert.ttl_left() <= 72 * 3600


def test_generated_certificate_requested_ttl_honored(pki, example_role):
    cert = pki.generate_certificate(example_role, "www.my-website.com", ttl="1h")
    assert 3500 < cert.ttl_left() <= 3600


def test_generated_certificate_is_issued_by_root(pki, root_ca, example_role):
    cert = pki.generate_certificate(example_role, "www.my-website.com")
    ca = root_ca.load()
    assert cert.load().issuer == ca.subject
    assert cert.issuing_ca == root_ca.certificate


def test_private_key_taken_once(pki, example_role):
    cert = pki.generate_certificate(example_role, "www.my-website.com")
    key = serialization.load_pem_private_key(cert.take_private_key().encode(), password=None)
    assert key.public_key().public_numbers() == cert.load().public_key().public_numbers()
    assert not cert.has_private_key
    assert "private_key" not in cert.to_dict()
    with pytest.raises(VaultInvocationError):
        cert.take_private_key()


def test_alt_names(pki, example_role):
    cert = pki.generate_certificate(
        example_role,
        "www.my-website.com",
        alt_names=["DNS:api.my-website.com", "IP:10.0.0.1"],
    )
    sans = cert.load().extensions.get_extension_for_class(x509.SubjectAlternativeName).value
    assert set(sans.get_values_for_type(x509.DNSName)) == {
        "www.my-website.com",
        "api.my-website.com",
    }
    assert [str(ip) for ip in sans.get_values_for_type(x509.IPAddress)] == ["10.0.0.1"]


@pytest.mark.parametrize(
    "common_name,alt_names",
    [
        ("www.not-my-website.com", None),
        ("my-website.com", None),
        ("www.my-website.com", ["DNS:evil.example.org"]),
    ],
)
def test_generate_certificate_disallowed_name(pki, example_role, common_name, alt_names):
    with pytest.raises(VaultPolicyViolationError, match="not allowed by this role"):
        pki.generate_certificate(example_role, common_name, alt_names=alt_names)


def test_generate_certificate_unknown_role(pki, root_ca):  # pylint: disable=unused-argument
    with pytest.raises(VaultNotFoundError, match="unknown role"):
        pki.generate_certificate("nope", "www.my-website.com")


def test_generate_certificate_unmounted(factory):
    with pytest.raises(VaultNotFoundError):
        factory.engine("not-mounted").generate_certificate("web", "www.example.com")


def test_sign_request(pki, example_role):
    csr, key = make_csr("a-subdomain.my-website.com")
    cert = pki.sign_request(example_role, csr)
    assert isinstance(cert, SignedCertificate)
    assert not hasattr(cert, "take_private_key")
    assert "private_key" not in cert.to_dict()
    assert cert.common_name == "a-subdomain.my-website.com"
    private_key = serialization.load_pem_private_key(key.encode(), password=None)
    assert private_key.public_key().public_numbers() == cert.load().public_key().public_numbers()


def test_sign_request_common_name_override(pki, example_role):
    csr, _ = make_csr("a-subdomain.my-website.com")
    cert = pki.sign_request(example_role, csr, common_name="other.my-website.com")
    assert cert.common_name == "other.my-website.com"


def test_sign_request_disallowed(pki, example_role):
    csr, _ = make_csr("www.example.org")
    with pytest.raises(VaultPolicyViolationError):
        pki.sign_request(example_role, csr)


def test_sign_request_malformed_csr_is_not_sent(pki, example_role, vault_server):
    requested = len(vault_server.requests)
    with pytest.raises(VaultInvocationError):
        pki.sign_request(example_role, "-----BEGIN CERTIFICATE REQUEST-----\nfoo\n")
    assert len(vault_server.requests) == requested


def test_revoke(pki, example_role):
    cert = pki.generate_certificate(example_role, "a-subdomain.my-website.com")
    assert cert.serial_number not in pki.read_crl()
    revocation_time = pki.revoke_certificate(cert.serial_number)
    assert revocation_time
    crl = pki.read_crl()
    assert isinstance(crl, CertificateRevocationList)
    assert cert.serial_number in crl
    assert serial_to_int(cert.serial_number) in crl.revoked_serials
    assert list(crl) == [cert.serial_number]


def test_revoke_twice_is_noop(pki, example_role):
    cert = pki.generate_certificate(example_role, "www.my-website.com")
    first = pki.revoke_certificate(cert.serial_number)
    second = pki.revoke_certificate(cert.serial_number)
    assert first == second
    assert len(pki.read_crl()) == 1


@pytest.mark.parametrize("fmt", ["int", "hyphen", "plain"])
def test_revoke_serial_formats(pki, example_role, fmt):
    cert = pki.generate_certificate(example_role, "www.my-website.com")
    serial = {
        "int": serial_to_int(cert.serial_number),
        "hyphen": cert.serial_number.replace(":", "-"),
        "plain": cert.serial_number.replace(":", "").upper(),
    }[fmt]
    pki.revoke_certificate(serial)
    assert serial in pki.read_crl()
    assert cert.serial_number in pki.read_crl()


def test_revoke_unknown_serial(pki, root_ca):  # pylint: disable=unused-argument
    with pytest.raises(VaultNotFoundError):
        pki.revoke_certificate("01:02:03:04")


def test_read_crl_empty(pki, root_ca):
    crl = pki.read_crl()
    assert not crl
    assert crl.issuer == root_ca.load().subject.rfc4514_string()
    assert crl.last_update <= datetime.now(timezone.utc)


def test_generate_root_exported(pki):
    root = pki.generate_root("Exported Root", type="exported", key_type="ec", key_bits=384)
    assert isinstance(root, RootCAConfig)
    assert root.issuer_id
    assert root.private_key_type == "ec"
    assert "PRIVATE KEY" in root.take_private_key()
    assert pki.read_ca() == root.certificate


def test_generate_root_internal_has_no_key(root_ca):
    assert not root_ca.has_private_key
    assert root_ca.common_name == "Test Root CA"
    assert root_ca.load().extensions.get_extension_for_class(x509.BasicConstraints).value.ca


def test_roles_crud(pki, web_role):
    assert pki.list_roles() == [web_role]
    role = pki.read_role(web_role)
    assert role.allowed_domains == ["example.com"]
    assert role.allow_subdomains
    assert role.max_ttl == 72 * 3600

    pki.update_role(web_role, allowed_domains="example.org", merge=True)
    role = pki.read_role(web_role)
    assert role.allowed_domains == ["example.org"]
    assert role.max_ttl == 72 * 3600

    pki.update_role(web_role, allowed_domains="example.net")
    role = pki.read_role(web_role)
    assert role.allowed_domains == ["example.net"]
    assert role.max_ttl == 0

    assert pki.delete_role(web_role) is True
    assert pki.read_role(web_role) is None
    assert pki.delete_role(web_role) is False
    assert pki.list_roles() == []


def test_list_and_read_certificates(pki, web_role):
    cert = pki.generate_certificate(web_role, "www.example.com")
    assert cert.serial_number in pki.list_certificates()
    assert pki.read_certificate(cert.serial_number) == cert.certificate
    with pytest.raises(VaultNotFoundError):
        pki.read_certificate("01:02")


def test_no_store_role_cannot_be_revoked(pki, root_ca):  # pylint: disable=unused-argument
    pki.update_role("ephemeral", allow_any_name=True, no_store=True, key_type="ec")
    cert = pki.generate_certificate("ephemeral", "anything.internal")
    assert cert.serial_number not in pki.list_certificates()
    with pytest.raises(VaultNotFoundError):
        pki.revoke_certificate(cert.serial_number)


def test_urls_and_crl_config(pki, root_ca):  # pylint: disable=unused-argument
    pki.configure_urls(crl_distribution_points=["http://vault.test:8200/v1/pki/crl"])
    assert pki.read_urls()["crl_distribution_points"] == ["http://vault.test:8200/v1/pki/crl"]
    pki.configure_crl(expiry="24h")
    assert pki.rotate_crl() is True
    crl = pki.read_crl()
    assert (crl.next_update - crl.last_update).total_seconds() == 24 * 3600


def test_intermediate_ca(factory, pki, root_ca):
    intermediate = factory.ensure_engine("pki_int", options={"max_lease_ttl": "4380h"})
    res = intermediate.generate_intermediate_csr("Test Intermediate CA", key_type="ec")
    signed = pki.sign_intermediate(res["csr"], ttl="4380h")
    assert signed.load().issuer == root_ca.load().subject
    intermediate.set_signed_intermediate(signed.certificate + root_ca.certificate)
    assert intermediate.read_ca() == signed.certificate
    assert root_ca.certificate in intermediate.read_ca_chain()

    intermediate.update_role("svc", allowed_domains=["svc.internal"], allow_subdomains=True)
    cert = intermediate.generate_certificate("svc", "api.svc.internal", ttl="1h")
    assert cert.load().issuer == signed.load().subject
    # engines are independent
    assert pki.list_roles() == []
    assert cert.serial_number not in pki.list_certificates()


def test_delete_root(pki, web_role):
    pki.delete_root()
    with pytest.raises(VaultInvocationError):
        pki.generate_certificate(web_role, "www.example.com")


def test_tidy(pki, root_ca):  # pylint: disable=unused-argument
    pki.tidy(safety_buffer="1h")

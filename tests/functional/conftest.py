import pytest
import requests

from vaultpki.factory import VaultPKISecretEngineFactory
from vaultpki.factory import get_authd_client
from tests.support.vault import ROOT_TOKEN
from tests.support.vault import VAULT_URL
from tests.support.vault import VaultServerAdapter


@pytest.fixture
def vault_server():
    return VaultServerAdapter()


@pytest.fixture
def vault_session(vault_server):
    session = requests.Session()
    session.mount(VAULT_URL, vault_server)
    yield session
    session.close()


@pytest.fixture
def vault_config():
    return {
        "server": {"url": VAULT_URL},
        "auth": {"method": "token", "token": ROOT_TOKEN},
    }


@pytest.fixture
def client(vault_config, vault_session):
    return get_authd_client(vault_config, session=vault_session)


@pytest.fixture
def factory(client):
    return VaultPKISecretEngineFactory(client)


@pytest.fixture
def sys_backend(factory):
    return factory.system_backend()


@pytest.fixture
def pki(factory):
    return factory.ensure_engine("pki", options={"max_lease_ttl": "8760h"})


@pytest.fixture
def root_ca(pki):
    return pki.generate_root("Test Root CA", ttl="8760h", key_type="ec", key_bits=256)


@pytest.fixture
def web_role(pki, root_ca):  # pylint: disable=unused-argument
    pki.update_role(
        "web",
        allowed_domains=["example.com"],
        allow_subdomains=True,
        max_ttl="72h",
        key_type="ec",
        key_bits=256,
    )
    return "web"

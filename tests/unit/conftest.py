from unittest.mock import Mock
from unittest.mock import patch

import pytest
import requests

from vaultpki import client as vclient
from vaultpki.auth import VaultTokenAuth
from vaultpki.leases import VaultToken


def _mock_json_response(data, status_code=200, reason=""):
    """
    Mock helper for http response
    """
    response = Mock(spec=requests.models.Response)
    response.json.return_value = data
    response.status_code = status_code
    response.reason = reason
    if status_code < 400:
        response.ok = True
    else:
        response.ok = False
        response.raise_for_status.side_effect = requests.exceptions.HTTPError
    return response


@pytest.fixture(params=[{}])
def server_config(request):
    conf = {
        "url": "http://127.0.0.1:8200",
        "namespace": None,
        "verify": None,
    }
    conf.update(request.param)
    return conf


@pytest.fixture
def token_lookup_self_response():
    return {
        "request_id": "0e8c388e-2cb6-bcb2-83b7-625127d568bb",
        "lease_id": "",
        "lease_duration": 0,
        "renewable": False,
        "data": {
            "accessor": "test-token-accessor",
            "creation_time": 1661188581,
            "creation_ttl": 9,
            "display_name": "",
            "entity_id": "",
            "expire_time": "2022-08-22T17:16:30.000000Z",
            "explicit_max_ttl": 0,
            "id": "test-token",
            "issue_time": "2022-08-22T17:16:21.473953Z",
            "meta": {},
            "num_uses": 0,
            "orphan": True,
            "path": "auth/token/create",
            "policies": ["pki_admin"],
            "renewable": True,
            "ttl": 3600,
            "type": "service",
        },
        "wrap_info": None,
        "warnings": None,
        "auth": None,
    }


@pytest.fixture
def token_renew_self_response():
    return {
        "auth": {
            "client_token": "test-token",
            "policies": ["pki_admin"],
            "token_policies": ["pki_admin"],
            "metadata": {},
            "lease_duration": 3600,
            "renewable": True,
        },
    }


@pytest.fixture
def token_renew_other_response():
    return {
        "auth": {
            "client_token": "other-test-token",
            "policies": ["default"],
            "metadata": {},
            "lease_duration": 3600,
            "renewable": True,
        },
    }


@pytest.fixture
def token_renew_accessor_response():
    return {
        "auth": {
            "client_token": "",
            "policies": ["default"],
            "metadata": {},
            "lease_duration": 3600,
            "renewable": True,
        },
    }


@pytest.fixture
def token_auth():
    token = VaultToken(
        lease_id="test-token",
        renewable=True,
        lease_duration=3600,
        num_uses=0,
        accessor="test-token-accessor",
    )
    return Mock(spec=VaultTokenAuth, **{"get_token.return_value": token})


@pytest.fixture(params=["valid_token"])
def client(server_config, request, token_auth):
    if request.param is None:
        return vclient.VaultClient(**server_config)
    if request.param == "valid_token":
        token_auth.is_valid.return_value = True
        token_auth.is_renewable.return_value = True
        return vclient.AuthenticatedVaultClient(token_auth, **server_config)
    if request.param == "invalid_token":
        token_auth.is_valid.return_value = False
        token_auth.is_renewable.return_value = False
        token_auth.get_token.side_effect = vclient.VaultAuthExpired
        return vclient.AuthenticatedVaultClient(token_auth, **server_config)
    raise RuntimeError(f"Unknown client fixture parameter: {request.param}")


@pytest.fixture
def req():
    with patch("requests.Session.request", autospec=False) as req:
        req.return_value = _mock_json_response({})
        yield req


@pytest.fixture
def req_failed(req, request):
    status_code = getattr(request, "param", 502)
    req.return_value = _mock_json_response({"errors": ["foo"]}, status_code=status_code)
    yield req


@pytest.fixture
def req_success(req):
    req.return_value = _mock_json_response(None, status_code=204)
    yield req


@pytest.fixture(params=[200])
def req_any(req, request):
    data = {}
    if request.param >= 400:
        data["errors"] = ["foo"]
    req.return_value = _mock_json_response(data, status_code=request.param)
    yield req

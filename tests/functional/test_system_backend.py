import pytest

from vaultpki.exceptions import VaultConflictError
from vaultpki.exceptions import VaultInvocationError
from vaultpki.exceptions import VaultNotFoundError
from vaultpki.models import EngineEnableOptions
from vaultpki.models import MountInfo


def test_enable_disable_cycle(sys_backend):
    assert sys_backend.is_engine_mounted("pki-test") is False
    sys_backend.enable("pki", "pki-test", description="test engine")
    assert sys_backend.is_engine_mounted("pki-test") is True
    assert sys_backend.is_engine_mounted("/pki-test/") is True
    sys_backend.disable("pki-test")
    assert sys_backend.is_engine_mounted("pki-test") is False


def test_enable_twice_conflicts(sys_backend):
    sys_backend.enable("pki", "pki-test")
    with pytest.raises(VaultConflictError, match="already in use"):
        sys_backend.enable("pki", "pki-test")
    assert sys_backend.is_engine_mounted("pki-test") is True


def test_conflict_is_invocation_error(sys_backend):
    sys_backend.enable("pki", "pki-test")
    with pytest.raises(VaultInvocationError):
        sys_backend.enable("kv", "pki-test")


def test_disable_unmounted(sys_backend, vault_server):
    with pytest.raises(VaultNotFoundError):
        sys_backend.disable("pki-test")
    assert "sys/mounts/pki-test" not in vault_server.paths_requested("DELETE")


def test_disable_twice(sys_backend):
    sys_backend.enable("pki", "pki-test")
    sys_backend.disable("pki-test")
    with pytest.raises(VaultNotFoundError):
        sys_backend.disable("pki-test")


def test_enable_unknown_type(sys_backend):
    with pytest.raises(VaultInvocationError, match="plugin not found"):
        sys_backend.enable("does-not-exist", "foo")
    assert not sys_backend.is_engine_mounted("foo")


def test_read_mount(sys_backend):
    sys_backend.enable(
        "pki",
        "pki-test",
        description="test engine",
        options=EngineEnableOptions(max_lease_ttl="87600h", default_lease_ttl="24h"),
    )
    info = sys_backend.read_mount("pki-test")
    assert isinstance(info, MountInfo)
    assert info.type == "pki"
    assert info.description == "test engine"
    assert info.max_lease_ttl == 87600 * 3600
    assert info.default_lease_ttl == 24 * 3600
    assert info.accessor


def test_read_mount_missing(sys_backend):
    with pytest.raises(VaultNotFoundError):
        sys_backend.read_mount("pki-test")


def test_list_mounts(sys_backend):
    sys_backend.enable("pki", "pki-root")
    sys_backend.enable("pki", "pki-int")
    mounts = sys_backend.list_mounts()
    assert {"pki-root", "pki-int"}.issubset(mounts)
    assert mounts["pki-int"].path == "pki-int"


def test_tune(sys_backend):
    sys_backend.enable("pki", "pki-test")
    sys_backend.tune("pki-test", options={"max_lease_ttl": "48h"}, description="tuned")
    config = sys_backend.read_mount_config("pki-test")
    assert config["max_lease_ttl"] == 48 * 3600
    assert config["description"] == "tuned"


def test_tune_unmounted(sys_backend):
    with pytest.raises(VaultNotFoundError):
        sys_backend.tune("pki-test", options={"max_lease_ttl": "48h"})
    with pytest.raises(VaultNotFoundError):
        sys_backend.read_mount_config("pki-test")


def test_reenabled_engine_is_fresh(factory, sys_backend):
    pki = factory.ensure_engine("pki-test")
    pki.generate_root("Test Root CA", key_type="ec")
    pki.update_role("web", allow_any_name=True, key_type="ec")
    pki.generate_certificate("web", "foo.example.com", ttl="1h")

    sys_backend.disable("pki-test")
    sys_backend.enable("pki", "pki-test")

    assert pki.list_roles() == []
    assert pki.list_certificates() == []
    with pytest.raises(VaultInvocationError):
        pki.read_ca()
    assert not pki.read_crl()

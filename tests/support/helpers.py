"""
Test support helpers
"""

import logging
import os

from cryptography.hazmat.primitives import serialization

from tests.support.vault import build_csr
from tests.support.vault import generate_key

log = logging.getLogger(__name__)

VAULT_ENV_VARS = ("VAULT_ADDR", "VAULT_TOKEN", "VAULT_NAMESPACE", "VAULT_CACERT")


class PatchedEnviron:
    """
    Create a patched environment. Variables named in ``__cleanup__``
    are removed for the duration of the context.
    """

    def __init__(self, **kwargs):
        self.cleanup_keys = kwargs.pop("__cleanup__", ())
        self.kwargs = kwargs
        self.original_environ = None

    def __enter__(self):
        self.original_environ = os.environ.copy()
        for key in self.cleanup_keys:
            os.environ.pop(key, None)
        os.environ.update(**self.kwargs)
        return self

    def __exit__(self, *args):
        os.environ.clear()
        os.environ.update(self.original_environ)


def vault_environ(**kwargs):
    """
    Return a PatchedEnviron without any Vault CLI variables
    except the ones passed in.
    """
    return PatchedEnviron(__cleanup__=VAULT_ENV_VARS, **kwargs)


def make_csr(common_name, key_type="ec", dns_names=()):
    """
    Return a PEM-encoded CSR and the PEM-encoded private key it was created with.
    """
    key = generate_key(key_type)
    csr = build_csr(common_name, key, dns_names=dns_names)
    key_pem = key.private_bytes(
        serialization.Encoding.PEM,
        serialization.PrivateFormat.PKCS8,
        serialization.NoEncryption(),
    ).decode()
    return csr.public_bytes(serialization.Encoding.PEM).decode(), key_pem

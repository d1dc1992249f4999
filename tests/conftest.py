import logging

import pytest

from tests.support.helpers import vault_environ

# Reset the root logger to its default level
logging.root.setLevel(logging.WARNING)


# This swallows all logging to stdout.
# To show select logs, set --log-cli-level=<level>
for handler in logging.root.handlers[:]:  # pragma: no cover
    logging.root.removeHandler(handler)
    handler.close()

log = logging.getLogger(__name__)


@pytest.fixture(autouse=True)
def _clean_vault_environ():
    """
    Ensure Vault CLI variables of the developer's shell do not leak into tests.
    """
    with vault_environ():
        yield

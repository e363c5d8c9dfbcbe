# Shared fixtures for the localproxy test suite.

import pytest

from localproxy.config import ProxyConfig
from localproxy.system_proxy import SystemProxyOrchestrator
from localproxy.transactions import TransactionStore
from localproxy.utils_tests.fake_networksetup import FakeNetworkSetup


@pytest.fixture
def completed_transactions():
    """Every transaction the store hands to its sink, in completion order."""
    return []


@pytest.fixture
def store(completed_transactions):
    return TransactionStore(sink=completed_transactions.append)


@pytest.fixture
def backup_dir(tmp_path):
    path = tmp_path / "backups"
    path.mkdir()
    return str(path)


@pytest.fixture
def fake_networksetup():
    return FakeNetworkSetup()


@pytest.fixture
def orchestrator(fake_networksetup, backup_dir):
    return SystemProxyOrchestrator(runner=fake_networksetup, backup_dir=backup_dir)


@pytest.fixture
def proxy_config(backup_dir):
    return ProxyConfig(port=18080, host="127.0.0.1", backup_dir=backup_dir)

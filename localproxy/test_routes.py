import json
import os
from unittest.mock import AsyncMock, patch

import pytest
from fastapi.testclient import TestClient

from localproxy.models import RequestLog, utc_timestamp
from localproxy.server import create_app
from localproxy.system_proxy import SystemProxyOrchestrator
from localproxy.utils_tests.fake_networksetup import FakeNetworkSetup


@pytest.fixture
def app(proxy_config, store, orchestrator):
    return create_app(proxy_config, store, orchestrator)


@pytest.fixture
def client(app):
    return TestClient(app)


def test_status_reports_config_and_active_count(client, store):
    store.begin(
        RequestLog(timestamp=utc_timestamp(), method="GET", url="http://slow.example/")
    )

    response = client.get("/proxy/status")

    assert response.status_code == 200
    assert response.json() == {
        "status": "running",
        "config": {
            "port": 18080,
            "host": "127.0.0.1",
            "logLevel": "info",
            "enableHttps": False,
        },
        # the pending request plus the status call itself
        "activeTransactions": 2,
    }


def test_logs_lists_in_flight_transactions(client, store):
    pending_id = store.begin(
        RequestLog(timestamp=utc_timestamp(), method="GET", url="http://slow.example/")
    )

    response = client.get("/proxy/logs")

    assert response.status_code == 200
    ids = [t["id"] for t in response.json()]
    assert pending_id in ids
    pending = next(t for t in response.json() if t["id"] == pending_id)
    assert pending["request"]["url"] == "http://slow.example/"
    assert pending["response"] is None


def test_control_requests_are_recorded(client, completed_transactions):
    client.get("/proxy/status")

    assert len(completed_transactions) == 1
    assert completed_transactions[0].request.url == "/proxy/status"
    assert completed_transactions[0].response.statusCode == 200


def test_system_settings(client, fake_networksetup):
    fake_networksetup.configure("Wi-Fi", "webproxy", True, "10.0.0.1", 3128)

    response = client.get("/proxy/system-settings")

    assert response.status_code == 200
    services = response.json()
    assert [s["name"] for s in services] == ["Wi-Fi", "Thunderbolt Ethernet"]
    assert services[0]["httpProxy"] == {
        "enabled": True,
        "server": "10.0.0.1",
        "port": 3128,
        "authenticated": False,
    }


def test_system_settings_failure(client, orchestrator):
    with patch.object(
        orchestrator, "get_settings", new_callable=AsyncMock
    ) as mock_get:
        mock_get.side_effect = RuntimeError("boom")

        response = client.get("/proxy/system-settings")

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to get system proxy settings"}


def test_system_enable_uses_configured_address(client, fake_networksetup, backup_dir):
    response = client.post("/proxy/system-enable")

    assert response.status_code == 200
    body = response.json()
    assert body["success"] is True
    assert body["message"] == "System proxy enabled"
    assert os.path.dirname(body["path"]) == backup_dir
    wifi = fake_networksetup.proxy("Wi-Fi", "webproxy")
    assert (wifi["enabled"], wifi["server"], wifi["port"]) == (True, "127.0.0.1", 18080)


def test_system_enable_failure(client, orchestrator):
    with patch.object(orchestrator, "enable", new_callable=AsyncMock) as mock_enable:
        mock_enable.side_effect = OSError("read-only file system")

        response = client.post("/proxy/system-enable")

    assert response.status_code == 500
    assert response.json() == {"error": "Failed to enable system proxy"}


def test_system_disable(client, fake_networksetup):
    fake_networksetup.configure("Wi-Fi", "webproxy", True, "10.0.0.1", 3128)

    response = client.post("/proxy/system-disable")

    assert response.status_code == 200
    assert response.json()["success"] is True
    assert fake_networksetup.proxy("Wi-Fi", "webproxy")["enabled"] is False


def test_system_backup_and_restore(client, fake_networksetup):
    fake_networksetup.configure("Wi-Fi", "securewebproxy", True, "corp", 8443)
    backup = client.post("/proxy/system-backup").json()
    fake_networksetup.configure("Wi-Fi", "securewebproxy", False)

    response = client.post("/proxy/system-restore")

    assert response.status_code == 200
    assert response.json()["path"] == backup["path"]
    restored = fake_networksetup.proxy("Wi-Fi", "securewebproxy")
    assert (restored["enabled"], restored["server"], restored["port"]) == (
        True,
        "corp",
        8443,
    )


def test_system_restore_explicit_path(client, fake_networksetup, backup_dir):
    path = os.path.join(backup_dir, "saved.json")
    with open(path, "w", encoding="utf-8") as fh:
        json.dump([{"name": "Wi-Fi", "ftpProxy": {"enabled": False}}], fh)

    response = client.post("/proxy/system-restore", json={"path": path})

    assert response.status_code == 200
    assert ["-setftpproxystate", "Wi-Fi", "off"] in fake_networksetup.calls


def test_system_restore_without_backup_is_not_found(client):
    response = client.post("/proxy/system-restore")

    assert response.status_code == 404
    assert "No backup" in response.json()["error"]


def test_system_restore_corrupt_snapshot(client, backup_dir):
    path = os.path.join(backup_dir, "broken.json")
    with open(path, "w", encoding="utf-8") as fh:
        fh.write("[{")

    response = client.post("/proxy/system-restore", json={"path": path})

    assert response.status_code == 422


def test_system_permissions(client):
    response = client.get("/proxy/system-permissions")

    assert response.status_code == 200
    assert response.json() == {"sufficient": True}


def test_system_permissions_insufficient(proxy_config, store, backup_dir):
    orchestrator = SystemProxyOrchestrator(
        runner=FakeNetworkSetup(list_fails=True), backup_dir=backup_dir
    )
    client = TestClient(create_app(proxy_config, store, orchestrator))

    assert client.get("/proxy/system-permissions").json() == {"sufficient": False}


def test_metrics_exposed_under_control_prefix(client):
    client.get("/proxy/status")

    response = client.get("/proxy/metrics")

    assert response.status_code == 200
    assert "localproxy_app_info" in response.text


def test_openapi_served_under_control_prefix(client):
    response = client.get("/proxy/openapi.json")

    assert response.status_code == 200
    assert "/proxy/status" in response.json()["paths"]

"""
Tests for the management API.

Tests cover:
- Credentials
- Opt-out configs (current and legacy endpoints)
- Custom senders and sending numbers
- Manual and bulk opt-out / opt-in
- Stats, history, logs, storage status, health and metrics
"""

from fastapi.testclient import TestClient

from conftest import SERVICE_NUMBER, make_settings, mock_http_client
from optout_gate.main import create_app


class TestCredentials:
    """Test /api/credentials."""

    def test_empty_by_default(self, client):
        response = client.get("/api/credentials")

        assert response.status_code == 200
        assert response.json() == {"apiKey": "", "apiSecret": "", "isLocked": False, "source": "file"}

    def test_save_masks_secret(self, client):
        response = client.post("/api/credentials", json={"apiKey": "key", "apiSecret": "secret"})
        assert response.json() == {"success": True}

        data = client.get("/api/credentials").json()
        assert data["apiKey"] == "key"
        assert data["apiSecret"] != "secret"
        assert data["isLocked"] is True

    def test_unlock(self, client):
        client.post("/api/credentials", json={"apiKey": "key", "apiSecret": "secret"})

        response = client.post("/api/credentials/unlock")

        assert response.json() == {"success": True, "apiKey": "key", "apiSecret": "secret"}
        assert client.get("/api/credentials").json()["isLocked"] is False

    def test_environment_credentials_read_only(self, tmp_path, sms_api):
        settings = make_settings(tmp_path, VONAGE_API_KEY="env-key", VONAGE_API_SECRET="env-secret")
        with TestClient(create_app(settings, http_client=mock_http_client(sms_api))) as env_client:
            data = env_client.get("/api/credentials").json()
            assert data["source"] == "environment"
            assert data["apiKey"] == "env-key"

            response = env_client.post("/api/credentials", json={"apiKey": "other", "apiSecret": "other"})
            assert response.status_code == 400
            assert env_client.post("/api/credentials/unlock").status_code == 400


class TestConfigs:
    """Test /api/configs."""

    def test_create_defaults(self, client):
        response = client.post("/api/configs", json={"optoutNumber": SERVICE_NUMBER})

        assert response.status_code == 200
        config = response.json()["config"]
        assert config["optoutNumber"] == SERVICE_NUMBER
        assert config["optoutPhrase"] == "STOP"
        assert config["optinPhrase"] == "START"
        assert client.get("/api/configs").json() == [config]

    def test_missing_number(self, client):
        response = client.post("/api/configs", json={"optoutPhrase": "END"})

        assert response.status_code == 400
        assert response.json() == {"error": "optoutNumber is required"}

    def test_duplicate_number(self, configured_client):
        response = configured_client.post("/api/configs", json={"optoutNumber": "+44 7418 317717"})
        assert response.status_code == 400

    def test_update(self, configured_client):
        response = configured_client.put(
            f"/api/configs/{configured_client.config_id}",
            json={"optoutPhrase": "END"},
        )

        assert response.status_code == 200
        config = response.json()["config"]
        assert config["id"] == configured_client.config_id
        assert config["optoutPhrase"] == "END"
        assert config["optinPhrase"] == "START"

    def test_update_unknown(self, client):
        response = client.put("/api/configs/missing", json={"optoutPhrase": "END"})

        assert response.status_code == 404
        assert response.json() == {"error": "Configuration not found"}

    def test_delete(self, configured_client):
        response = configured_client.delete(f"/api/configs/{configured_client.config_id}")

        assert response.status_code == 200
        assert configured_client.get("/api/configs").json() == []
        assert configured_client.delete(f"/api/configs/{configured_client.config_id}").status_code == 404


class TestLegacyConfig:
    """Test the whole-document /api/config endpoints."""

    def test_get_document(self, configured_client):
        document = configured_client.get("/api/config").json()

        assert document["customSenders"] == []
        assert document["optoutConfigs"][0]["optoutNumber"] == SERVICE_NUMBER

    def test_replace_document(self, client):
        document = {
            "optoutConfigs": [{"id": "1", "optoutNumber": SERVICE_NUMBER, "optoutPhrase": "END", "optinPhrase": "BEGIN"}],
            "customSenders": [],
        }

        assert client.post("/api/config", json=document).json() == {"success": True}
        assert client.get("/api/config").json() == document

    def test_add_update_delete(self, client):
        config = client.post("/api/config/add", json={"optoutNumber": SERVICE_NUMBER}).json()["config"]

        assert client.put(f"/api/config/{config['id']}", json={"optinPhrase": "JOIN"}).json() == {"success": True}
        assert client.get("/api/configs").json()[0]["optinPhrase"] == "JOIN"

        assert client.delete(f"/api/config/{config['id']}").json() == {"success": True}
        assert client.get("/api/configs").json() == []


class TestSenders:
    """Test /api/senders and /api/numbers."""

    def test_add_and_list(self, client):
        response = client.post("/api/senders", json={"senderId": "ACME", "description": "Brand"})

        assert response.status_code == 200
        sender = response.json()["sender"]
        assert sender["senderId"] == "ACME"
        assert client.get("/api/senders").json() == [sender]

    def test_invalid_sender(self, client):
        response = client.post("/api/senders", json={"senderId": "AB"})

        assert response.status_code == 400
        assert response.json() == {"error": "Sender ID must be 3-11 alphanumeric characters only"}

    def test_duplicate_sender(self, client):
        client.post("/api/senders", json={"senderId": "ACME"})
        response = client.post("/api/senders", json={"senderId": "acme"})

        assert response.status_code == 400
        assert response.json() == {"error": "Sender ID already exists"}

    def test_delete_sender(self, client):
        sender = client.post("/api/senders", json={"senderId": "ACME"}).json()["sender"]

        assert client.delete(f"/api/senders/{sender['id']}").status_code == 200
        assert client.get("/api/senders").json() == []
        assert client.delete(f"/api/senders/{sender['id']}").status_code == 404

    def test_bulk(self, client):
        response = client.post("/api/senders/bulk", json={
            "senders": ["ACME", {"senderId": "Shop1", "description": "Store"}, "A"],
        })

        assert response.status_code == 200
        data = response.json()
        assert data["summary"] == {"total": 3, "added": 2, "failed": 1}
        assert data["results"]["added"] == ["ACME", "Shop1"]

    def test_bulk_requires_list(self, client):
        assert client.post("/api/senders/bulk", json={}).status_code == 400

    def test_numbers_without_credentials(self, client):
        client.post("/api/senders", json={"senderId": "ACME"})

        numbers = client.get("/api/numbers").json()

        assert numbers == [{
            "msisdn": "ACME",
            "country": "ALPHA",
            "type": "alphanumeric",
            "features": ["SMS"],
            "isCustom": True,
        }]

    def test_numbers_with_credentials(self, configured_client):
        configured_client.post("/api/senders", json={"senderId": "ACME"})

        numbers = configured_client.get("/api/numbers").json()

        assert [n["msisdn"] for n in numbers] == [SERVICE_NUMBER, "ACME"]


class TestManualOptOut:
    """Test /api/optout, /api/optin and the bulk variants."""

    def test_optout(self, client):
        response = client.post("/api/optout", json={"number": "+44 7700 900000"})

        assert response.status_code == 200
        assert response.json() == {"success": True, "number": "447700900000", "added": True}
        assert client.get("/api/optouts").json() == ["447700900000"]

        history = client.get("/api/history").json()
        assert history[0]["receivedOn"] == "manual"
        assert "configId" not in history[0]

    def test_optout_twice(self, client):
        client.post("/api/optout", json={"number": "447700900000"})
        response = client.post("/api/optout", json={"number": "447700900000"})

        assert response.json()["added"] is False
        assert client.get("/api/optouts").json() == ["447700900000"]
        assert len(client.get("/api/history").json()) == 1

    def test_optout_requires_number(self, client):
        response = client.post("/api/optout", json={})

        assert response.status_code == 400
        assert response.json() == {"error": "Missing required fields: number"}

    def test_optout_rejects_no_digits(self, client):
        assert client.post("/api/optout", json={"number": "unknown"}).status_code == 400

    def test_optin(self, client):
        client.post("/api/optout", json={"number": "447700900000"})

        response = client.post("/api/optin", json={"number": "447700900000"})

        assert response.json() == {"success": True, "number": "447700900000", "removed": True}
        assert client.get("/api/optouts").json() == []

    def test_optin_not_blocked(self, client):
        response = client.post("/api/optin", json={"number": "447700900000"})

        assert response.json()["removed"] is False
        assert client.get("/api/history").json() == []

    def test_bulk_optout_same_number_twice(self, client):
        """Two formats of one number are stored once; the second is already blocked."""
        response = client.post("/api/optout/bulk", json={"numbers": ["+44 7700 900000", "447700900000"]})

        assert response.status_code == 200
        data = response.json()
        assert data["summary"] == {"total": 2, "added": 1, "alreadyBlocked": 1, "invalid": 0}
        assert data["results"]["added"] == ["447700900000"]
        assert client.get("/api/optouts").json() == ["447700900000"]

    def test_bulk_optout_invalid_entries(self, client):
        data = client.post("/api/optout/bulk", json={"numbers": ["n/a", 447700900001]}).json()

        assert data["summary"]["invalid"] == 1
        assert data["results"]["invalid"] == ["n/a"]
        assert data["results"]["added"] == ["447700900001"]

    def test_bulk_optout_history(self, client):
        client.post("/api/optout/bulk", json={"numbers": ["447700900000", "447700900001"]})

        history = client.get("/api/history", params={"action": "optout"}).json()
        assert {e["number"] for e in history} == {"447700900000", "447700900001"}
        assert all(e["receivedOn"] == "api" for e in history)

    def test_bulk_optin(self, client):
        client.post("/api/optout/bulk", json={"numbers": ["447700900000"]})

        data = client.post("/api/optin/bulk", json={"numbers": ["+44 7700 900000", "447700900009"]}).json()

        assert data["summary"] == {"total": 2, "removed": 1, "notFound": 1, "invalid": 0}
        assert data["results"]["notFound"] == ["447700900009"]
        assert client.get("/api/optouts").json() == []

    def test_bulk_requires_list(self, client):
        response = client.post("/api/optout/bulk", json={"numbers": []})

        assert response.status_code == 400
        assert response.json() == {"error": "Missing or invalid numbers array"}


class TestStatsAndHistory:
    """Test /api/stats and /api/history."""

    def test_stats(self, client):
        client.post("/api/optout/bulk", json={"numbers": ["447700900000", "447700900001"]})
        client.post("/api/optin", json={"number": "447700900000"})

        assert client.get("/api/stats").json() == {"optins": 1, "optouts": 2}

    def test_stats_empty(self, client):
        assert client.get("/api/stats").json() == {"optins": 0, "optouts": 0}

    def test_history_filters(self, client):
        client.post("/api/optout", json={"number": "447700900000"})
        client.post("/api/optin", json={"number": "447700900000"})

        assert len(client.get("/api/history", params={"action": "all"}).json()) == 2
        assert [e["action"] for e in client.get("/api/history", params={"action": "optin"}).json()] == ["optin"]
        assert client.get("/api/history", params={"startDate": "2000-01-01", "endDate": "2000-01-02"}).json() == []

    def test_history_invalid_date(self, client):
        response = client.get("/api/history", params={"startDate": "yesterday"})
        assert response.status_code == 400

    def test_clear_history(self, client):
        client.post("/api/optout", json={"number": "447700900000"})

        assert client.delete("/api/history").json() == {"success": True}
        assert client.get("/api/history").json() == []
        assert client.get("/api/optouts").json() == ["447700900000"]


class TestOperations:
    """Test storage status, logs, health and metrics."""

    def test_storage_status(self, configured_client):
        configured_client.post("/api/optout", json={"number": "447700900000"})

        data = configured_client.get("/api/storage-status").json()

        assert data["storageType"] == "database"
        assert data["persistent"] is True
        assert data["degraded"] is False
        assert data["data"] == {
            "configurations": 1,
            "customSenders": 0,
            "optedOutNumbers": 1,
            "historyEntries": 1,
        }

    def test_storage_status_with_files(self, tmp_path, sms_api):
        settings = make_settings(tmp_path, DATA_DIR=str(tmp_path / "data"))
        with TestClient(create_app(settings, http_client=mock_http_client(sms_api))) as files_client:
            assert files_client.get("/api/storage-status").json()["storageType"] == "database + files"

    def test_logs(self, client):
        client.post("/api/optout", json={"number": "447700900000"})

        messages = [entry["message"] for entry in client.get("/api/logs").json()]
        assert "Added 447700900000 to opt-out list (config manual)" in messages

    def test_clear_logs(self, client):
        client.post("/api/optout", json={"number": "447700900000"})

        assert client.delete("/api/logs").json() == {"success": True}

        messages = [entry["message"] for entry in client.get("/api/logs").json()]
        assert "Added 447700900000 to opt-out list (config manual)" not in messages

    def test_health(self, client):
        data = client.get("/_/health").json()

        assert data["status"] == "ok"
        assert data["timestamp"].endswith("Z")

    def test_liveness_and_readiness(self, client):
        assert client.get("/health/live").json() == {"status": "ok"}
        assert client.get("/health/ready").json() == {"status": "ready"}

    def test_request_id_header(self, client):
        assert "X-Request-ID" in client.get("/api/optouts").headers

    def test_metrics(self, client):
        client.get("/api/optouts")

        response = client.get("/metrics")

        assert response.status_code == 200
        assert "http_requests_total" in response.text
        assert 'path="/api/optouts"' in response.text

    def test_metrics_collapse_numbers(self, client):
        """Per-number paths share one label value."""
        client.get("/api/check/447700900000")
        client.get("/api/check/447700900001")

        body = client.get("/metrics").text
        assert 'path="/api/check/{number}"' in body
        assert 'path="/api/check/447700900000"' not in body

    def test_logs_endpoint_not_logged(self, client):
        client.delete("/api/logs")
        client.get("/api/logs")

        messages = [entry["message"] for entry in client.get("/api/logs").json()]
        assert messages == ["Logs cleared"]

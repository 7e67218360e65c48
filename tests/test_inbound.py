"""
Tests for the /webhooks/inbound-sms endpoint.

Tests cover:
- STOP / START phrases updating the opt-out list and history
- Query string, JSON and form payloads
- Unconfigured destination numbers
- Malformed payloads still acknowledged with 200
"""

from conftest import SERVICE_NUMBER

SUBSCRIBER = "447700900000"


def inbound(client, text: str, msisdn: str = SUBSCRIBER, to: str = SERVICE_NUMBER):
    return client.get("/webhooks/inbound-sms", params={"msisdn": msisdn, "to": to, "text": text})


class TestInboundOptOut:
    """Test opt-out and opt-in via inbound phrases."""

    def test_stop_blocks_number(self, configured_client):
        """STOP to a configured number adds the sender to the opt-out list."""
        response = inbound(configured_client, "STOP")

        assert response.status_code == 200
        assert response.text == "OK"
        assert configured_client.get(f"/api/check/{SUBSCRIBER}").json() == {"number": SUBSCRIBER, "blocked": True}
        assert configured_client.get("/api/optouts").json() == [SUBSCRIBER]

    def test_stop_records_history(self, configured_client):
        inbound(configured_client, "stop please")

        history = configured_client.get("/api/history").json()
        assert len(history) == 1
        assert history[0]["number"] == SUBSCRIBER
        assert history[0]["action"] == "optout"
        assert history[0]["receivedOn"] == SERVICE_NUMBER
        assert history[0]["configId"] == configured_client.config_id

    def test_stop_then_send_rejected(self, configured_client, sms_api):
        """A number that texted STOP cannot be sent to, and the SMS API is never called."""
        inbound(configured_client, "STOP")

        response = configured_client.post(
            "/api/send",
            json={"to": SUBSCRIBER, "from": SERVICE_NUMBER, "text": "Offer"},
        )

        assert response.status_code == 403
        assert response.json()["error"] == "Number is opted out"
        assert sms_api.sent == []

    def test_sender_normalized(self, configured_client):
        inbound(configured_client, "STOP", msisdn="+44 7700 900000")
        assert configured_client.get("/api/optouts").json() == [SUBSCRIBER]

    def test_stop_twice_single_entry(self, configured_client):
        inbound(configured_client, "STOP")
        inbound(configured_client, "STOP")

        assert configured_client.get("/api/optouts").json() == [SUBSCRIBER]
        assert len(configured_client.get("/api/history").json()) == 2

    def test_start_unblocks(self, configured_client):
        inbound(configured_client, "STOP")
        response = inbound(configured_client, "Start")

        assert response.status_code == 200
        assert configured_client.get(f"/api/check/{SUBSCRIBER}").json()["blocked"] is False

        actions = [e["action"] for e in configured_client.get("/api/history").json()]
        assert sorted(actions) == ["optin", "optout"]

    def test_start_when_not_blocked_still_recorded(self, configured_client):
        """Opt-in history is kept even when the number was not on the list."""
        inbound(configured_client, "START")

        assert configured_client.get("/api/optouts").json() == []
        history = configured_client.get("/api/history").json()
        assert [e["action"] for e in history] == ["optin"]

    def test_custom_phrases(self, configured_client):
        configured_client.put(
            f"/api/configs/{configured_client.config_id}",
            json={"optoutPhrase": "UNSUBSCRIBE,QUIT", "optinPhrase": "JOIN"},
        )

        inbound(configured_client, "STOP")
        assert configured_client.get("/api/optouts").json() == []

        inbound(configured_client, "quit")
        assert configured_client.get("/api/optouts").json() == [SUBSCRIBER]

    def test_other_text_ignored(self, configured_client):
        inbound(configured_client, "What time do you open?")

        assert configured_client.get("/api/optouts").json() == []
        assert configured_client.get("/api/history").json() == []


class TestInboundPayloadFormats:
    """Test the accepted payload encodings."""

    def test_json_body(self, configured_client):
        response = configured_client.post(
            "/webhooks/inbound-sms",
            json={"msisdn": SUBSCRIBER, "to": SERVICE_NUMBER, "text": "STOP"},
        )

        assert response.status_code == 200
        assert configured_client.get("/api/optouts").json() == [SUBSCRIBER]

    def test_form_body(self, configured_client):
        response = configured_client.post(
            "/webhooks/inbound-sms",
            data={"msisdn": SUBSCRIBER, "to": SERVICE_NUMBER, "text": "STOP"},
        )

        assert response.status_code == 200
        assert configured_client.get("/api/optouts").json() == [SUBSCRIBER]

    def test_from_and_message_fields(self, configured_client):
        configured_client.post(
            "/webhooks/inbound-sms",
            json={"from": SUBSCRIBER, "to": SERVICE_NUMBER, "message": "STOP"},
        )
        assert configured_client.get("/api/optouts").json() == [SUBSCRIBER]


class TestInboundIgnored:
    """Test payloads that must not change any state."""

    def test_unconfigured_destination(self, configured_client):
        response = inbound(configured_client, "STOP", to="447418000000")

        assert response.status_code == 200
        assert configured_client.get("/api/optouts").json() == []
        assert configured_client.get("/api/history").json() == []

    def test_no_configs(self, client):
        response = inbound(client, "STOP")

        assert response.status_code == 200
        assert client.get("/api/optouts").json() == []

    def test_missing_text(self, configured_client):
        response = configured_client.get("/webhooks/inbound-sms", params={"msisdn": SUBSCRIBER, "to": SERVICE_NUMBER})

        assert response.status_code == 200
        assert response.text == "OK"
        assert configured_client.get("/api/optouts").json() == []

    def test_empty_payload(self, configured_client):
        response = configured_client.post("/webhooks/inbound-sms")
        assert response.status_code == 200

    def test_malformed_json(self, configured_client):
        response = configured_client.post(
            "/webhooks/inbound-sms",
            content="{not json",
            headers={"Content-Type": "application/json"},
        )
        assert response.status_code == 200

    def test_outcome_counted(self, configured_client):
        inbound(configured_client, "STOP", to="447418000000")

        body = configured_client.get("/metrics").text
        assert 'inbound_events_total{result="unmatched"}' in body


class TestDeliveryStatus:

    def test_acknowledged(self, client):
        response = client.post("/webhooks/status", json={"messageId": "msg-1", "status": "delivered"})

        assert response.status_code == 200
        assert response.text == "OK"

    def test_get_acknowledged(self, client):
        assert client.get("/webhooks/status", params={"status": "delivered"}).status_code == 200

    def test_malformed_multipart_acknowledged(self, client):
        """A multipart body without a boundary is logged and still acknowledged."""
        response = client.post(
            "/webhooks/status",
            content=b"messageId=msg-1",
            headers={"Content-Type": "multipart/form-data"},
        )

        assert response.status_code == 200
        assert response.text == "OK"

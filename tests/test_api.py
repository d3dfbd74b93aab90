"""
End-to-end tests for the HTTP and WebSocket surface.
"""

import re
import time

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.config import Settings
from app.main import create_app


def _register(client, user_id="u1", email="u1@example.com", phone="+15550001"):
    response = client.post(
        "/register", json={"userId": user_id, "phone": phone, "email": email}
    )
    assert response.status_code == 200
    return response


def _code_from(email_sender):
    return re.search(r"Your OTP is (\d{6})", email_sender.sent[-1]["body"]).group(1)


class TestHealth:
    def test_health(self, client):
        response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"ok": True, "status": "ok", "connections": 0}

    def test_health_under_api_prefix(self, client):
        assert client.get("/api/health").status_code == 200


class TestRegister:
    def test_register(self, client):
        response = _register(client)
        assert response.json() == {"ok": True, "message": "User registered"}

    def test_register_is_insert_or_ignore(self, client, app):
        _register(client)
        response = _register(client, email="other@example.com", phone="+15559999")

        assert response.json()["message"] == "User already registered"
        assert app.state.directory.contact_address("u1") == "u1@example.com"

    def test_email_taken_by_other_identity(self, client):
        _register(client)
        response = client.post(
            "/register",
            json={"userId": "u2", "phone": "+15550002", "email": "U1@example.com"},
        )
        assert response.status_code == 400
        assert response.json()["reason"] == "VALIDATION_ERROR"

    def test_contact_clash_does_not_name_the_field(self, client):
        _register(client)
        for payload in (
            {"userId": "u2", "phone": "+15550002", "email": "u1@example.com"},
            {"userId": "u3", "phone": "+15550001", "email": "u3@example.com"},
        ):
            response = client.post("/register", json=payload)

            assert response.status_code == 400
            assert response.json()["detail"] == "Registration rejected"

    def test_missing_fields(self, client):
        response = client.post("/register", json={"userId": "u1"})
        body = response.json()

        assert response.status_code == 400
        assert body["ok"] is False
        assert body["reason"] == "VALIDATION_ERROR"
        assert "email" in body["detail"]


class TestEmailFlow:
    def test_request_and_verify(self, client, app, email_sender):
        _register(client)

        response = client.post("/send-otp", json={"userId": "u1", "method": "email"})
        assert response.status_code == 200
        assert response.json()["message"] == "OTP sent via email"
        assert response.json()["expires_in_seconds"] == 300
        assert len(app.state.store.outstanding("u1")) == 1

        code = _code_from(email_sender)
        wrong = f"{(int(code) + 1) % 10**6:06d}"

        response = client.post("/verify-otp", json={"userId": "u1", "otp": wrong})
        assert response.status_code == 400
        assert response.json()["reason"] == "INVALID_OR_EXPIRED"

        response = client.post("/verify-otp", json={"userId": "u1", "otp": code})
        assert response.status_code == 200
        assert response.json() == {"ok": True, "message": "OTP verified"}

        response = client.post("/verify-otp", json={"userId": "u1", "otp": code})
        assert response.status_code == 400
        assert response.json()["reason"] == "INVALID_OR_EXPIRED"

    def test_expired_code_is_rejected(self, client, email_sender, clock):
        _register(client)
        client.post("/send-otp", json={"userId": "u1", "method": "email"})
        clock.advance(301)

        response = client.post(
            "/verify-otp", json={"userId": "u1", "otp": _code_from(email_sender)}
        )
        assert response.json()["reason"] == "INVALID_OR_EXPIRED"

    def test_transport_failure(self, client, app, email_sender):
        _register(client)
        email_sender.fail = True

        response = client.post("/send-otp", json={"userId": "u1", "method": "email"})

        assert response.status_code == 502
        assert response.json()["reason"] == "TRANSPORT_ERROR"
        assert "SMTP" not in response.json()["detail"]
        assert len(app.state.store.outstanding("u1")) == 1


class TestRequestValidation:
    def test_unknown_identity(self, client, app):
        response = client.post("/send-otp", json={"userId": "unknown", "method": "push"})

        assert response.status_code == 404
        assert response.json()["reason"] == "NOT_FOUND"
        assert len(app.state.store) == 0

    @pytest.mark.parametrize(
        "payload",
        [
            {"userId": "u1", "method": "sms"},
            {"userId": "u1"},
            {"method": "email"},
            {"userId": "", "method": "email"},
        ],
    )
    def test_invalid_request(self, client, app, payload):
        _register(client)
        response = client.post("/send-otp", json=payload)

        assert response.status_code == 400
        assert response.json()["reason"] == "VALIDATION_ERROR"
        assert len(app.state.store) == 0

    def test_malformed_code(self, client):
        _register(client)
        response = client.post("/verify-otp", json={"userId": "u1", "otp": "abc"})

        assert response.status_code == 400
        assert response.json()["reason"] == "VALIDATION_ERROR"

    def test_missing_code(self, client):
        response = client.post("/verify-otp", json={"userId": "u1"})
        assert response.json()["reason"] == "VALIDATION_ERROR"


class TestPushFlow:
    def test_push_delivery_then_disconnect(self, client, app):
        _register(client)

        with client.websocket_connect("/ws?userId=u1") as websocket:
            assert websocket.receive_json() == {"type": "connected", "message": "Connected"}
            assert client.get("/health").json()["connections"] == 1

            response = client.post("/send-otp", json={"userId": "u1", "method": "push"})
            assert response.status_code == 200
            assert response.json()["message"] == "OTP sent via push"

            payload = websocket.receive_json()
            [record] = app.state.store.outstanding("u1")
            assert payload["type"] == "otp"
            assert payload["otp"] == record.code

        response = client.post("/send-otp", json={"userId": "u1", "method": "push"})
        assert response.status_code == 409
        assert response.json()["reason"] == "NO_ACTIVE_CONNECTION"

    def test_new_connection_evicts_previous(self, client, app):
        _register(client)

        with client.websocket_connect("/ws?userId=u1") as first:
            first.receive_json()
            with client.websocket_connect("/ws?userId=u1") as second:
                second.receive_json()
                assert first.receive()["type"] == "websocket.close"

                client.post("/send-otp", json={"userId": "u1", "method": "push"})
                assert second.receive_json()["type"] == "otp"
                assert app.state.registry.active_count() == 1

    def test_binary_frames_are_ignored(self, client, app):
        _register(client)

        with client.websocket_connect("/ws?userId=u1") as websocket:
            websocket.receive_json()
            websocket.send_bytes(b"\x00\x01")
            websocket.send_text("ping")

            response = client.post("/send-otp", json={"userId": "u1", "method": "push"})

            assert response.status_code == 200
            assert websocket.receive_json()["type"] == "otp"
            assert app.state.registry.active_count() == 1

    def test_connect_without_user_id_is_refused(self, client):
        with pytest.raises(WebSocketDisconnect) as excinfo:
            with client.websocket_connect("/ws"):
                pass
        assert excinfo.value.code == 1008


class TestRateLimit:
    @staticmethod
    def _limited_client(email_sender, clock, limit=2, window=900):
        app = create_app(
            Settings(
                database_url="sqlite://",
                sweeper_enabled=False,
                otp_request_limit=limit,
                otp_request_window_seconds=window,
            ),
            email_sender=email_sender,
            clock=clock,
        )
        return app, TestClient(app)

    def test_issuance_is_throttled(self, email_sender, clock):
        app, client = self._limited_client(email_sender, clock)
        with client:
            _register(client)
            for _ in range(2):
                response = client.post("/send-otp", json={"userId": "u1", "method": "email"})
                assert response.status_code == 200

            response = client.post("/send-otp", json={"userId": "u1", "method": "email"})

            assert len(app.state.store.outstanding("u1")) == 2

        assert response.status_code == 429
        body = response.json()
        assert body["reason"] == "RATE_LIMITED"
        assert body["retry_after"] > 0
        assert int(response.headers["Retry-After"]) > 0

    def test_forwarded_header_does_not_open_a_new_bucket(self, email_sender, clock):
        app, client = self._limited_client(email_sender, clock)
        with client:
            _register(client)
            statuses = [
                client.post(
                    "/send-otp",
                    json={"userId": "u1", "method": "email"},
                    headers={"X-Forwarded-For": f"10.0.0.{index}"},
                ).status_code
                for index in range(10)
            ]

            assert statuses == [200, 200] + [429] * 8
            assert len(app.state.store.outstanding("u1")) == 2

    def test_api_prefix_shares_the_bucket(self, email_sender, clock):
        _, client = self._limited_client(email_sender, clock)
        with client:
            _register(client)
            client.post("/send-otp", json={"userId": "u1", "method": "email"})
            client.post("/api/send-otp", json={"userId": "u1", "method": "email"})

            response = client.post("/send-otp", json={"userId": "u1", "method": "email"})

        assert response.status_code == 429

    def test_verify_is_not_throttled(self, email_sender, clock):
        _, client = self._limited_client(email_sender, clock, limit=1)
        with client:
            _register(client)
            client.post("/send-otp", json={"userId": "u1", "method": "email"})
            code = _code_from(email_sender)
            wrong = f"{(int(code) + 1) % 10**6:06d}"
            for _ in range(3):
                response = client.post("/verify-otp", json={"userId": "u1", "otp": wrong})
                assert response.json()["reason"] == "INVALID_OR_EXPIRED"

            response = client.post("/verify-otp", json={"userId": "u1", "otp": code})

        assert response.status_code == 200

    def test_window_reset_allows_new_requests(self, email_sender, clock):
        _, client = self._limited_client(email_sender, clock, limit=1, window=1)
        with client:
            _register(client)
            assert client.post(
                "/send-otp", json={"userId": "u1", "method": "email"}
            ).status_code == 200
            assert client.post(
                "/send-otp", json={"userId": "u1", "method": "email"}
            ).status_code == 429

            time.sleep(1.1)

            assert client.post(
                "/send-otp", json={"userId": "u1", "method": "email"}
            ).status_code == 200

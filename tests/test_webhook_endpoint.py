"""POST /webhooks/provider error semantics and idempotency.

Status code contract:
  - signature missing / wrong          → 401, nothing stored
  - body not a JSON object             → 200, event recorded as error
  - store unavailable                  → 500 + Retry-After (provider retries)
  - redelivery                         → 200 {"ok": true, "duplicate": true}
  - unrecognized event / no correlation→ 200, event processed
  - payload-caused processing failure  → 200, event marked error
"""

import json
from unittest.mock import patch

from sqlalchemy import func, select
from sqlalchemy.exc import OperationalError

from gate_api.db.models import Entitlement, WebhookEvent
from tests.webhook_helpers import TEST_SECRET, LogCapture, make_event, sign


def _events(session_factory) -> list[WebhookEvent]:
    with session_factory() as session:
        return session.execute(select(WebhookEvent).order_by(WebhookEvent.id)).scalars().all()


def _entitlements(session_factory) -> list[Entitlement]:
    with session_factory() as session:
        return session.execute(select(Entitlement).order_by(Entitlement.id)).scalars().all()


def _license_created(key: str = "LIVE-KEY-1", event_id: str = "evt_lk_1") -> dict:
    return make_event(
        "license_key_created",
        {
            "key": key,
            "user_email": "buyer@example.com",
            "product_id": "48H",
            "order_id": 555,
            "created_at": "2026-01-01T00:00:00Z",
        },
        data_type="license-keys",
        data_id="lk_1",
        event_id=event_id,
    )


# ============================================================================
# (A) Signature
# ============================================================================


class TestSignature:
    def test_wrong_signature_401_nothing_stored(self, post_webhook, session_factory):
        response = post_webhook(_license_created(), signature=sign(b"other body"))

        assert response.status_code == 401
        assert response.headers["content-type"].startswith("application/problem+json")
        assert response.json()["error_code"] == "WEBHOOK_SIGNATURE_INVALID"
        assert _events(session_factory) == []
        assert _entitlements(session_factory) == []

    def test_missing_signature_401(self, client, session_factory):
        body = json.dumps(_license_created()).encode()
        response = client.post("/webhooks/provider", content=body, headers={"Content-Type": "application/json"})

        assert response.status_code == 401
        assert _events(session_factory) == []

    def test_unconfigured_secret_fails_closed(self, post_webhook, monkeypatch, session_factory):
        from gate_api.config.settings import reset_settings

        monkeypatch.delenv("WEBHOOK_SECRET", raising=False)
        monkeypatch.delenv("LEMON_WEBHOOK_SECRET", raising=False)
        reset_settings()

        assert post_webhook(_license_created()).status_code == 401
        assert _events(session_factory) == []

    def test_signature_over_exact_bytes(self, post_webhook):
        raw = b'{"meta": {"event_name": "order_created", "event_id": "evt_ws"},   "data": {}}'
        assert post_webhook(raw=raw, signature=sign(raw)).status_code == 200


# ============================================================================
# (B) Body shape
# ============================================================================


class TestBody:
    def test_invalid_json_acked_and_recorded_as_error(self, post_webhook, session_factory):
        response = post_webhook(raw=b"not json at all")

        assert response.status_code == 200
        assert response.json() == {"ok": True}
        [event] = _events(session_factory)
        assert event.status == "error"
        assert event.error.startswith("MalformedEvent")
        assert event.event_id.startswith("sha256:")
        assert event.payload == {"raw": "not json at all"}
        assert _entitlements(session_factory) == []

    def test_json_array_acked_and_recorded_as_error(self, post_webhook, session_factory):
        response = post_webhook([1, 2, 3])

        assert response.status_code == 200
        [event] = _events(session_factory)
        assert event.status == "error"
        assert event.payload == {"raw": "[1, 2, 3]"}

    def test_invalid_json_redelivery_stays_single_row(self, post_webhook, session_factory):
        post_webhook(raw=b"{not json")
        response = post_webhook(raw=b"{not json")

        assert response.status_code == 200
        assert len(_events(session_factory)) == 1
        assert _events(session_factory)[0].status == "error"

    def test_invalid_json_store_failure_still_500(self, post_webhook):
        error = OperationalError("INSERT", {}, Exception("could not connect"))
        with patch("gate_api.routers.webhooks.record_event", side_effect=error):
            response = post_webhook(raw=b"{not json")

        assert response.status_code == 500
        assert response.headers["Retry-After"] == "60"


# ============================================================================
# (D) Idempotency + (E)/(F) outcomes
# ============================================================================


class TestIngestion:
    def test_first_delivery_applies(self, post_webhook, session_factory):
        response = post_webhook(_license_created())

        assert response.status_code == 200
        assert response.json() == {"ok": True}

        [event] = _events(session_factory)
        assert event.event_id == "evt_lk_1"
        assert event.event_name == "license_key_created"
        assert event.status == "processed"
        assert event.payload_hash is not None

        [ent] = _entitlements(session_factory)
        assert ent.license_key == "LIVE-KEY-1"
        assert ent.email == "buyer@example.com"
        assert ent.plan == "fixed"
        assert ent.status == "active"

    def test_redelivery_is_duplicate(self, post_webhook, session_factory):
        post_webhook(_license_created())
        response = post_webhook(_license_created())

        assert response.status_code == 200
        assert response.json() == {"ok": True, "duplicate": True}
        assert len(_events(session_factory)) == 1
        assert len(_entitlements(session_factory)) == 1

    def test_event_id_header_wins(self, post_webhook, session_factory):
        post_webhook(_license_created(), headers={"X-Event-Id": "hdr-1"})
        assert _events(session_factory)[0].event_id == "hdr-1"

    def test_unrecognized_event_recorded_no_change(self, post_webhook, session_factory):
        response = post_webhook(make_event("affiliate_activated", {}, event_id="evt_aff"))

        assert response.status_code == 200
        [event] = _events(session_factory)
        assert event.status == "processed"
        assert _entitlements(session_factory) == []

    def test_correlation_miss_recorded_no_change(self, post_webhook, session_factory):
        response = post_webhook(
            make_event("order_refunded", {}, data_type="orders", data_id="999", event_id="evt_ref_x")
        )

        assert response.status_code == 200
        assert _events(session_factory)[0].status == "processed"
        assert _entitlements(session_factory) == []

    def test_malformed_payload_acks_and_marks_error(self, post_webhook, session_factory):
        payload = make_event(
            "subscription_cancelled",
            {"ends_at": "not-a-date"},
            data_type="subscriptions",
            data_id="sub_1",
            event_id="evt_bad",
        )
        response = post_webhook(payload)

        assert response.status_code == 200
        assert response.json() == {"ok": True}
        [event] = _events(session_factory)
        assert event.status == "error"
        assert event.error.startswith("MalformedEvent")

    def test_errored_event_is_retried_on_redelivery(self, post_webhook, session_factory):
        payload = make_event("subscription_cancelled", {"ends_at": "nope"}, event_id="evt_retry")
        post_webhook(payload)

        response = post_webhook(payload)

        assert response.json() == {"ok": True}, "error rows are reclaimed, not reported as duplicates"
        assert len(_events(session_factory)) == 1


# ============================================================================
# (C) Store unavailable
# ============================================================================


class TestStoreUnavailable:
    def test_record_failure_500_with_retry_after(self, post_webhook, session_factory):
        error = OperationalError("INSERT", {}, Exception("could not connect"))
        with patch("gate_api.routers.webhooks.record_event", side_effect=error):
            response = post_webhook(_license_created())

        assert response.status_code == 500
        assert response.headers["Retry-After"] == "60"
        assert response.headers["content-type"].startswith("application/problem+json")
        body = response.json()
        assert body["error_code"] == "STORE_UNAVAILABLE"
        assert "could not connect" not in json.dumps(body)

    def test_apply_failure_500_and_event_reclaimable(self, post_webhook, session_factory):
        error = OperationalError("UPDATE", {}, Exception("statement timeout"))
        with patch("gate_api.routers.webhooks.apply_patch", side_effect=error):
            response = post_webhook(_license_created())

        assert response.status_code == 500
        assert response.headers["Retry-After"] == "60"
        [event] = _events(session_factory)
        assert event.status == "error"

        retry = post_webhook(_license_created())
        assert retry.status_code == 200
        assert retry.json() == {"ok": True}
        assert _events(session_factory)[0].status == "processed"
        assert len(_entitlements(session_factory)) == 1


# ============================================================================
# Logging
# ============================================================================


def test_logs_carry_no_secrets(post_webhook):
    payload = _license_created(key="SUPER-SECRET-LICENSE")
    body = json.dumps(payload).encode()
    signature = sign(body)

    with LogCapture() as cap:
        post_webhook(raw=body, signature=signature)
        raw = cap.raw()
        messages = cap.messages()

    assert "WEBHOOK_RECEIVED" in messages
    assert "WEBHOOK_PROCESSED" in messages
    assert "ENTITLEMENT_UPSERTED" in messages
    assert "SUPER-SECRET-LICENSE" not in raw
    assert "buyer@example.com" not in raw
    assert TEST_SECRET not in raw
    assert signature not in raw


def test_logs_carry_event_id(post_webhook):
    with LogCapture() as cap:
        post_webhook(_license_created(event_id="evt_ctx_1"))
        processed = [entry for entry in cap.logs() if entry.get("message") == "WEBHOOK_PROCESSED"]

    assert processed and processed[0]["event_id"] == "evt_ctx_1"

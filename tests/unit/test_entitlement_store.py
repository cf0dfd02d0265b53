"""Entitlement store: merge-upsert and correlation updates.

Coverage:
  - upsert inserts, then merges null-safely (A/B events for one key)
  - "unknown" plan never replaces a real plan
  - expired / revoked are terminal
  - starts_at and fixed-grant expiries are write-once
  - meta is a shallow key-level merge
  - correlation update by order_id / subscription_id, CorrelationMiss on zero rows
  - lookup by license key, then newest row by email (case-insensitive)
"""

from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import func, select

from gate_api.billing.classifier import EntitlementPatch, EventKind
from gate_api.billing.entitlements import (
    apply_patch,
    find_entitlement,
    update_by_correlation,
    upsert_by_license_key,
)
from gate_api.db.dialect import as_utc
from gate_api.db.models import Entitlement
from gate_api.errors import CorrelationMiss

T0 = datetime(2026, 1, 1, tzinfo=timezone.utc)


def _patch(kind=EventKind.GRANT, status="active", **fields) -> EntitlementPatch:
    return EntitlementPatch(kind=kind, status=status, **fields)


def _get(db_session, license_key: str) -> Entitlement:
    db_session.expire_all()
    return db_session.execute(
        select(Entitlement).where(Entitlement.license_key == license_key)
    ).scalar_one()


def _count(db_session) -> int:
    return db_session.execute(select(func.count()).select_from(Entitlement)).scalar_one()


# ============================================================================
# Upsert by license key
# ============================================================================


class TestUpsert:
    def test_insert_new_row(self, db_session):
        ent_id = upsert_by_license_key(
            db_session,
            _patch(
                license_key="KEY-1",
                email="a@b.com",
                order_id="555",
                plan="fixed",
                starts_at=T0,
                expires_at=T0 + timedelta(hours=48),
                keep_existing_expiry=True,
                meta={"last_event": "license_key_created"},
            ),
            now=T0,
        )

        ent = _get(db_session, "KEY-1")
        assert ent.id == ent_id
        assert ent.status == "active"
        assert ent.plan == "fixed"
        assert ent.order_id == "555"
        assert as_utc(ent.expires_at) == T0 + timedelta(hours=48)
        assert ent.meta == {"last_event": "license_key_created"}

    def test_second_event_fills_gaps_without_nulling(self, db_session):
        """Event A carries email, event B carries order/subscription ids."""
        upsert_by_license_key(db_session, _patch(license_key="KEY-2", email="a@b.com"), now=T0)
        upsert_by_license_key(
            db_session,
            _patch(license_key="KEY-2", order_id="555", subscription_id="sub_1", customer_id="9"),
            now=T0 + timedelta(minutes=1),
        )

        ent = _get(db_session, "KEY-2")
        assert ent.email == "a@b.com"
        assert ent.order_id == "555"
        assert ent.subscription_id == "sub_1"
        assert ent.customer_id == "9"
        assert _count(db_session) == 1

    def test_unknown_plan_does_not_replace_known(self, db_session):
        upsert_by_license_key(db_session, _patch(license_key="KEY-3", plan="monthly"), now=T0)
        upsert_by_license_key(db_session, _patch(license_key="KEY-3", plan="unknown"), now=T0)
        assert _get(db_session, "KEY-3").plan == "monthly"

    def test_unknown_plan_fills_empty(self, db_session):
        upsert_by_license_key(db_session, _patch(license_key="KEY-4"), now=T0)
        upsert_by_license_key(db_session, _patch(license_key="KEY-4", plan="unknown"), now=T0)
        assert _get(db_session, "KEY-4").plan == "unknown"

    @pytest.mark.parametrize("terminal", ["revoked", "expired"])
    def test_terminal_status_is_sticky(self, db_session, terminal):
        upsert_by_license_key(db_session, _patch(license_key="KEY-5"), now=T0)
        upsert_by_license_key(
            db_session,
            _patch(kind=EventKind.REVOKE, status=terminal, license_key="KEY-5", expires_at=T0),
            now=T0,
        )
        upsert_by_license_key(
            db_session,
            _patch(kind=EventKind.ACTIVATE, status="active", license_key="KEY-5"),
            now=T0 + timedelta(hours=1),
        )

        assert _get(db_session, "KEY-5").status == terminal

    def test_fixed_grant_expiry_is_write_once(self, db_session):
        first = T0 + timedelta(hours=48)
        upsert_by_license_key(
            db_session,
            _patch(license_key="KEY-6", plan="fixed", starts_at=T0, expires_at=first, keep_existing_expiry=True),
            now=T0,
        )
        upsert_by_license_key(
            db_session,
            _patch(
                license_key="KEY-6",
                plan="fixed",
                starts_at=T0 + timedelta(days=3),
                expires_at=first + timedelta(days=3),
                keep_existing_expiry=True,
            ),
            now=T0 + timedelta(days=3),
        )

        ent = _get(db_session, "KEY-6")
        assert as_utc(ent.expires_at) == first
        assert as_utc(ent.starts_at) == T0

    def test_cancel_overrides_expiry(self, db_session):
        upsert_by_license_key(
            db_session, _patch(license_key="KEY-7", expires_at=T0 + timedelta(days=30)), now=T0
        )
        ends_at = T0 + timedelta(days=10)
        upsert_by_license_key(
            db_session,
            _patch(kind=EventKind.CANCEL, status="cancelled", license_key="KEY-7", expires_at=ends_at),
            now=T0,
        )

        ent = _get(db_session, "KEY-7")
        assert ent.status == "cancelled"
        assert as_utc(ent.expires_at) == ends_at

    def test_meta_shallow_merge(self, db_session):
        upsert_by_license_key(
            db_session,
            _patch(license_key="KEY-8", meta={"last_event": "license_key_created", "product_key": "48H"}),
            now=T0,
        )
        upsert_by_license_key(
            db_session,
            _patch(kind=EventKind.PAUSE, status="paused", license_key="KEY-8", meta={"last_event": "subscription_paused"}),
            now=T0,
        )

        assert _get(db_session, "KEY-8").meta == {
            "last_event": "subscription_paused",
            "product_key": "48H",
        }

    def test_updated_at_refreshed(self, db_session):
        upsert_by_license_key(db_session, _patch(license_key="KEY-9"), now=T0)
        later = T0 + timedelta(hours=2)
        upsert_by_license_key(db_session, _patch(license_key="KEY-9"), now=later)

        ent = _get(db_session, "KEY-9")
        assert as_utc(ent.updated_at) == later
        assert as_utc(ent.created_at) == T0

    def test_requires_license_key(self, db_session):
        with pytest.raises(ValueError):
            upsert_by_license_key(db_session, _patch(order_id="1"), now=T0)


# ============================================================================
# Correlation update
# ============================================================================


class TestCorrelation:
    def test_updates_by_order_id(self, db_session):
        upsert_by_license_key(db_session, _patch(license_key="KEY-C1", order_id="555", email="a@b.com"), now=T0)

        rows = update_by_correlation(
            db_session,
            _patch(kind=EventKind.REVOKE, status="revoked", order_id="555", expires_at=T0, meta={"last_event": "order_refunded"}),
            now=T0 + timedelta(days=1),
        )

        ent = _get(db_session, "KEY-C1")
        assert rows == 1
        assert ent.status == "revoked"
        assert ent.email == "a@b.com", "absent incoming fields must not null the row"
        assert as_utc(ent.expires_at) == T0
        assert ent.meta["last_event"] == "order_refunded"

    def test_updates_by_subscription_id(self, db_session):
        upsert_by_license_key(db_session, _patch(license_key="KEY-C2", subscription_id="sub_1"), now=T0)

        update_by_correlation(
            db_session,
            _patch(kind=EventKind.PAUSE, status="paused", subscription_id="sub_1"),
            now=T0,
        )

        assert _get(db_session, "KEY-C2").status == "paused"

    def test_terminal_guard_applies(self, db_session):
        upsert_by_license_key(db_session, _patch(license_key="KEY-C3", status="revoked", order_id="9"), now=T0)

        update_by_correlation(db_session, _patch(kind=EventKind.ACTIVATE, order_id="9"), now=T0)

        assert _get(db_session, "KEY-C3").status == "revoked"

    def test_miss_raises(self, db_session):
        with pytest.raises(CorrelationMiss) as exc_info:
            update_by_correlation(db_session, _patch(kind=EventKind.CANCEL, status="cancelled", order_id="nope"), now=T0)
        assert exc_info.value.order_id == "nope"
        assert _count(db_session) == 0

    def test_no_identifiers_raises(self, db_session):
        with pytest.raises(CorrelationMiss):
            update_by_correlation(db_session, _patch(kind=EventKind.EXPIRE, status="expired"), now=T0)

    def test_apply_patch_routes(self, db_session):
        apply_patch(db_session, _patch(license_key="KEY-R", order_id="77"), now=T0)
        apply_patch(db_session, _patch(kind=EventKind.PAUSE, status="paused", order_id="77"), now=T0)

        assert _get(db_session, "KEY-R").status == "paused"
        assert _count(db_session) == 1


# ============================================================================
# Lookup
# ============================================================================


class TestFind:
    def test_by_license_key(self, db_session):
        upsert_by_license_key(db_session, _patch(license_key="KEY-F1", email="x@y.com"), now=T0)
        assert find_entitlement(db_session, license_key="KEY-F1").license_key == "KEY-F1"

    def test_unknown_key_falls_back_to_email(self, db_session):
        upsert_by_license_key(db_session, _patch(license_key="KEY-F2", email="x@y.com"), now=T0)
        ent = find_entitlement(db_session, license_key="NOPE", email="X@Y.com")
        assert ent.license_key == "KEY-F2"

    def test_email_picks_newest(self, db_session):
        upsert_by_license_key(db_session, _patch(license_key="KEY-OLD", email="x@y.com"), now=T0)
        upsert_by_license_key(db_session, _patch(license_key="KEY-NEW", email="x@y.com"), now=T0 + timedelta(days=1))

        assert find_entitlement(db_session, email="x@y.com").license_key == "KEY-NEW"

    def test_nothing(self, db_session):
        assert find_entitlement(db_session) is None
        assert find_entitlement(db_session, license_key="NOPE") is None

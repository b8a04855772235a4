"""Tests for src.data.db — SubscriptionStore (SQLite storage)."""

import sqlite3
import threading
from datetime import date, timedelta
from unittest.mock import patch

import pytest

from src.core.errors import InvalidIdentifier, NotFound, StoreUnavailable, ValidationError
from src.core.validator import LocationId
from src.data.db import SubscriptionStore
from src.data.models import PickupEvent, Subscription

DAY = date(2024, 10, 28)


def _event(location_id, waste_type, day=DAY):
    return PickupEvent(date=day, waste_type=waste_type, location_id=location_id)


class TestUpsertUser:
    def test_creates_user_with_default_time(self, store):
        user = store.upsert_user(1, "12345")
        assert user.id == 1
        assert user.location_id == "12345"
        assert user.notify_time == "18:00"
        assert user.created_at != ""
        assert user.last_notified_on is None

    def test_accepts_location_id_object(self, store):
        user = store.upsert_user(1, LocationId("abc"))
        assert user.location_id == "abc"

    def test_normalizes_raw_location(self, store):
        assert store.upsert_user(1, "  12345 ").location_id == "12345"

    def test_invalid_location_rejected_and_nothing_stored(self, store):
        with pytest.raises(InvalidIdentifier):
            store.upsert_user(1, "12345&x=1")
        assert store.get_user(1) is None

    def test_invalid_time_rejected(self, store):
        with pytest.raises(ValidationError):
            store.upsert_user(1, "12345", notify_time="25:00")

    def test_overwrites_location_keeps_time(self, store):
        store.upsert_user(1, "111", notify_time="07:00")
        user = store.upsert_user(1, "222")
        assert user.location_id == "222"
        assert user.notify_time == "07:00"
        assert store.distinct_locations() == [LocationId("222")]

    def test_overwrite_with_time(self, store):
        store.upsert_user(1, "111")
        assert store.upsert_user(1, "111", notify_time="6").notify_time == "06:00"

    def test_default_categories_only_on_create(self, store):
        store.upsert_user(1, "111", default_categories=["Bio", "Rest"])
        store.remove_subscription(1, "Bio")
        store.upsert_user(1, "222", default_categories=["Bio", "Rest"])
        assert store.get_subscriptions(1) == ["Rest"]

    def test_location_change_resets_last_notified(self, store):
        store.upsert_user(1, "111")
        store.claim_notification(1, DAY)
        assert store.upsert_user(1, "111").last_notified_on == DAY.isoformat()
        assert store.upsert_user(1, "222").last_notified_on is None


class TestUserReadsAndUpdates:
    def test_get_user_not_found(self, store):
        assert store.get_user(999) is None

    def test_update_notify_time(self, store):
        store.upsert_user(1, "111")
        assert store.update_notify_time(1, "19:00").notify_time == "19:00"
        assert store.get_user(1).notify_time == "19:00"

    def test_update_notify_time_missing_user(self, store):
        with pytest.raises(NotFound):
            store.update_notify_time(1, "19:00")


class TestAlias:
    def test_alias_stored_on_create(self, store):
        assert store.upsert_user(1, "111", alias=" Home ").alias == "Home"

    def test_alias_defaults_to_none(self, store):
        assert store.upsert_user(1, "111").alias is None

    def test_same_location_keeps_alias(self, store):
        store.upsert_user(1, "111", alias="Home")
        assert store.upsert_user(1, "111", notify_time="07:00").alias == "Home"

    def test_move_replaces_alias(self, store):
        store.upsert_user(1, "111", alias="Home")
        assert store.upsert_user(1, "222", alias="Office").alias == "Office"

    def test_move_without_alias_clears_it(self, store):
        store.upsert_user(1, "111", alias="Home")
        assert store.upsert_user(1, "222").alias is None

    def test_invalid_alias_rejected_and_nothing_stored(self, store):
        with pytest.raises(ValidationError):
            store.upsert_user(1, "111", alias="   ")
        assert store.get_user(1) is None

    def test_update_alias(self, store):
        store.upsert_user(1, "111", alias="Home")
        assert store.update_alias(1, "Garden").alias == "Garden"
        assert store.get_user(1).alias == "Garden"

    def test_update_alias_missing_user(self, store):
        with pytest.raises(NotFound):
            store.update_alias(1, "Home")

    def test_update_alias_validates(self, store):
        store.upsert_user(1, "111", alias="Home")
        with pytest.raises(ValidationError):
            store.update_alias(1, "x" * 31)
        assert store.get_user(1).alias == "Home"


class TestDeleteUser:
    def test_delete_cascades_subscriptions(self, store):
        store.upsert_user(1, "111", default_categories=["Bio", "Rest"])
        assert store.delete_user(1) is True
        assert store.get_user(1) is None
        assert store.get_subscriptions(1) == []
        assert store.list_subscriptions_by_location("111") == set()

    def test_delete_missing_user_is_noop(self, store):
        assert store.delete_user(42) is False

    def test_delete_twice(self, store):
        store.upsert_user(1, "111")
        assert store.delete_user(1) is True
        assert store.delete_user(1) is False

    def test_foreign_key_cascade_at_sql_level(self, store, tmp_db_path):
        store.upsert_user(1, "111", default_categories=["Bio"])
        conn = sqlite3.connect(tmp_db_path)
        conn.execute("PRAGMA foreign_keys = ON")
        with conn:
            conn.execute("DELETE FROM users WHERE id = 1")
        count = conn.execute("SELECT COUNT(*) FROM subscriptions").fetchone()[0]
        conn.close()
        assert count == 0


class TestSubscriptions:
    def test_add_is_idempotent(self, store):
        store.upsert_user(1, "111")
        assert store.add_subscription(1, "Bio") is True
        assert store.add_subscription(1, "Bio") is False
        assert store.get_subscriptions(1) == ["Bio"]

    def test_add_for_missing_user_is_silent_noop(self, store):
        assert store.add_subscription(1, "Bio") is False
        assert store.get_subscriptions(1) == []

    def test_add_for_missing_user_raises_when_required(self, store):
        with pytest.raises(NotFound):
            store.add_subscription(1, "Bio", require_user=True)

    def test_remove_is_idempotent(self, store):
        store.upsert_user(1, "111", default_categories=["Bio"])
        assert store.remove_subscription(1, "Bio") is True
        assert store.remove_subscription(1, "Bio") is False
        assert store.remove_subscription(99, "Bio") is False

    def test_subscriptions_sorted(self, store):
        store.upsert_user(1, "111", default_categories=["Rest", "Bio", "Papier"])
        assert store.get_subscriptions(1) == ["Bio", "Papier", "Rest"]

    def test_list_by_location(self, store):
        store.upsert_user(1, "111", default_categories=["Bio", "Rest"])
        store.upsert_user(2, "111", default_categories=["Gelb"])
        store.upsert_user(3, "222", default_categories=["Bio"])
        assert store.list_subscriptions_by_location("111") == {
            Subscription(1, "Bio"),
            Subscription(1, "Rest"),
            Subscription(2, "Gelb"),
        }

    def test_list_by_location_due_by(self, store):
        store.upsert_user(1, "111", notify_time="18:00", default_categories=["Bio"])
        store.upsert_user(2, "111", notify_time="18:45", default_categories=["Bio"])
        store.upsert_user(3, "111", notify_time="07:00", default_categories=["Bio"])
        subs = store.list_subscriptions_by_location("111", due_by="18:00")
        assert {s.user_id for s in subs} == {1, 3}

    def test_list_by_location_due_by_minute_precision(self, store):
        store.upsert_user(1, "111", notify_time="18:45", default_categories=["Bio"])
        assert store.list_subscriptions_by_location("111", due_by="18:44") == set()
        assert {s.user_id for s in store.list_subscriptions_by_location("111", due_by="18:45")} == {1}

    def test_list_by_location_pending_for(self, store):
        store.upsert_user(1, "111", default_categories=["Bio"])
        store.upsert_user(2, "111", default_categories=["Bio"])
        store.upsert_user(3, "111", default_categories=["Bio"])
        store.claim_notification(1, DAY)
        store.claim_notification(2, DAY - timedelta(days=1))
        subs = store.list_subscriptions_by_location("111", pending_for=DAY)
        assert {s.user_id for s in subs} == {2, 3}

    def test_list_by_location_invalid_due_by(self, store):
        with pytest.raises(ValidationError):
            store.list_subscriptions_by_location("111", due_by="late")

    def test_list_by_location_validates_id(self, store):
        with pytest.raises(InvalidIdentifier):
            store.list_subscriptions_by_location("111' OR '1'='1")

    def test_location_index_exists(self, store, tmp_db_path):
        conn = sqlite3.connect(tmp_db_path)
        names = {r[1] for r in conn.execute("PRAGMA index_list(users)").fetchall()}
        conn.close()
        assert "idx_users_location_id" in names


class TestPickupEvents:
    def test_events_on(self, store):
        store.replace_events(
            LocationId("111"),
            [_event("111", "Rest"), _event("111", "Bio"), _event("111", "Bio", DAY + timedelta(days=1))],
            from_date=DAY,
        )
        events = store.events_on(DAY)
        assert events == [_event("111", "Bio"), _event("111", "Rest")]

    def test_events_on_empty(self, store):
        assert store.events_on(DAY) == []

    def test_replace_events_skips_past_and_foreign_locations(self, store):
        inserted = store.replace_events(
            LocationId("111"),
            [
                _event("111", "Bio", DAY - timedelta(days=1)),
                _event("222", "Bio"),
                _event("111", "Bio"),
                _event("111", "Bio"),
            ],
            from_date=DAY,
        )
        assert inserted == 1
        assert store.events_on(DAY - timedelta(days=1)) == []

    def test_replace_events_keeps_earlier_dates(self, store):
        past = DAY - timedelta(days=3)
        store.replace_events(
            LocationId("111"), [_event("111", "Rest", past), _event("111", "Gelb")], from_date=past,
        )
        store.replace_events(LocationId("111"), [_event("111", "Bio")], from_date=DAY)
        assert store.events_on(past) == [_event("111", "Rest", past)]
        assert store.events_on(DAY) == [_event("111", "Bio")]

    def test_replace_events_leaves_other_locations(self, store):
        store.replace_events(LocationId("222"), [_event("222", "Rest")], from_date=DAY)
        store.replace_events(LocationId("111"), [_event("111", "Bio")], from_date=DAY)
        assert store.events_on(DAY) == [_event("111", "Bio"), _event("222", "Rest")]

    def test_replace_events_requires_valid_location(self, store):
        with pytest.raises(InvalidIdentifier):
            store.replace_events("1 1", [], from_date=DAY)

    def test_distinct_locations(self, store):
        store.upsert_user(1, "b")
        store.upsert_user(2, "a")
        store.upsert_user(3, "a")
        assert store.distinct_locations() == [LocationId("a"), LocationId("b")]


class TestNotificationClaims:
    def test_claim_once_per_date(self, store):
        store.upsert_user(1, "111")
        assert store.claim_notification(1, DAY) is True
        assert store.claim_notification(1, DAY) is False
        assert store.get_user(1).last_notified_on == DAY.isoformat()

    def test_claim_later_date_succeeds(self, store):
        store.upsert_user(1, "111")
        store.claim_notification(1, DAY)
        assert store.claim_notification(1, DAY + timedelta(days=1)) is True

    def test_claim_earlier_date_fails(self, store):
        store.upsert_user(1, "111")
        store.claim_notification(1, DAY)
        assert store.claim_notification(1, DAY - timedelta(days=1)) is False

    def test_claim_missing_user(self, store):
        assert store.claim_notification(1, DAY) is False

    def test_release_allows_reclaim(self, store):
        store.upsert_user(1, "111")
        store.claim_notification(1, DAY)
        store.release_notification(1, DAY)
        assert store.claim_notification(1, DAY) is True

    def test_claim_survives_new_store_instance(self, store, tmp_db_path):
        store.upsert_user(1, "111")
        store.claim_notification(1, DAY)
        reopened = SubscriptionStore(db_path=tmp_db_path, timeout=5)
        assert reopened.claim_notification(1, DAY) is False


class TestConcurrency:
    def test_add_subscription_racing_delete_user_leaves_no_orphans(self, tmp_db_path):
        store = SubscriptionStore(db_path=tmp_db_path, timeout=10)
        categories = ["Bio", "Rest", "Papier", "Gelb", "Weihnachtsbaum"]

        for round_ in range(20):
            store.upsert_user(1, "111")
            barrier = threading.Barrier(2)
            errors = []

            def adder():
                barrier.wait()
                try:
                    for category in categories:
                        store.add_subscription(1, category)
                except Exception as exc:  # pragma: no cover - reported below
                    errors.append(exc)

            def deleter():
                barrier.wait()
                try:
                    store.delete_user(1)
                except Exception as exc:  # pragma: no cover - reported below
                    errors.append(exc)

            threads = [threading.Thread(target=adder), threading.Thread(target=deleter)]
            for t in threads:
                t.start()
            for t in threads:
                t.join()

            assert errors == []
            conn = sqlite3.connect(tmp_db_path)
            orphans = conn.execute(
                "SELECT COUNT(*) FROM subscriptions s "
                "LEFT JOIN users u ON u.id = s.user_id WHERE u.id IS NULL"
            ).fetchone()[0]
            conn.close()
            assert orphans == 0, f"orphaned subscriptions in round {round_}"
            store.delete_user(1)


class TestStoreUnavailable:
    def test_operational_error_becomes_store_unavailable(self, store):
        with patch.object(
            SubscriptionStore, "_connect", side_effect=sqlite3.OperationalError("database is locked"),
        ):
            with pytest.raises(StoreUnavailable):
                store.get_user(1)

    def test_unopenable_path(self, tmp_path):
        blocker = tmp_path / "not_a_dir"
        blocker.write_text("x")
        with pytest.raises((StoreUnavailable, OSError)):
            SubscriptionStore(db_path=str(blocker / "db.sqlite"), timeout=1)

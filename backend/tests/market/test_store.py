"""Tests for the SQLite key-value and instrument stores."""

from optiondesk.market.models import ResolvedOption
from optiondesk.market.store import InstrumentStore, KeyValueStore, open_database


def _option(strike, side, expiry="2025-05-22", token=None):
    return ResolvedOption(
        token=token or f"{strike}{side}",
        symbol=f"NIFTY22MAY25{strike}{side}",
        strike=strike,
        side=side,
        expiry=expiry,
        lot_size=75,
        tick_size=5.0,
    )


class TestOpenDatabase:
    def test_creates_parent_directory(self, tmp_path):
        path = tmp_path / "nested" / "options.db"
        conn = open_database(path)
        try:
            assert path.exists()
            tables = {
                row["name"]
                for row in conn.execute("SELECT name FROM sqlite_master WHERE type = 'table'")
            }
            assert {"kv", "options"} <= tables
        finally:
            conn.close()

    def test_options_indexes_exist(self, db):
        indexes = {
            row["name"]
            for row in db.execute("SELECT name FROM sqlite_master WHERE type = 'index'")
        }
        assert {"idx_options_expiry", "idx_options_strike", "idx_options_opt_type"} <= indexes


class TestKeyValueStore:
    def test_set_get_json_values(self, db):
        store = KeyValueStore(db)
        store.set("session", {"tokens": {"jwtToken": "abc"}, "expiresAt": 12.5})
        assert store.get("session") == {"tokens": {"jwtToken": "abc"}, "expiresAt": 12.5}

    def test_missing_key(self, db):
        assert KeyValueStore(db).get("nope") is None

    def test_expiry(self, db, clock):
        store = KeyValueStore(db, clock=clock)
        store.set("k", "v", ttl=10)
        clock.advance(9)
        assert store.get("k") == "v"
        clock.advance(1)
        assert store.get("k") is None

    def test_survives_a_new_store_instance(self, tmp_path):
        path = tmp_path / "options.db"
        conn = open_database(path)
        KeyValueStore(conn).set("k", [1, 2, 3])
        conn.close()

        conn = open_database(path)
        try:
            assert KeyValueStore(conn).get("k") == [1, 2, 3]
        finally:
            conn.close()

    def test_delete(self, db):
        store = KeyValueStore(db)
        store.set("k", 1)
        assert store.delete("k") is True
        assert store.delete("k") is False


class TestInstrumentStore:
    def test_save_and_query_by_expiry(self, db):
        store = InstrumentStore(db)
        saved = store.save_options(
            [_option(25000, "PE"), _option(24950, "CE"), _option(24950, "PE")]
        )
        assert saved == 3
        found = store.options_by_expiry("2025-05-22")
        assert [(o.strike, o.side) for o in found] == [(24950, "CE"), (24950, "PE"), (25000, "PE")]

    def test_save_nothing(self, db):
        assert InstrumentStore(db).save_options([]) == 0

    def test_upsert_by_token(self, db):
        store = InstrumentStore(db)
        store.save_options([_option(24950, "CE", token="t1")])
        store.save_options([_option(24950, "CE", token="t1", expiry="2025-05-29")])
        assert store.option_by_token("t1").expiry == "2025-05-29"
        assert store.option_by_token("missing") is None

    def test_strike_range_and_expiries(self, db):
        store = InstrumentStore(db)
        store.save_options(
            [
                _option(24900, "CE"),
                _option(25000, "CE"),
                _option(25100, "CE", expiry="2025-05-29", token="late"),
            ]
        )
        assert [o.strike for o in store.options_in_strike_range(24950, 25100)] == [25000, 25100]
        assert store.expiries() == ["2025-05-22", "2025-05-29"]

    def test_token_map_limited_to_requested_strikes(self, db):
        store = InstrumentStore(db)
        store.save_options([_option(24950, "CE"), _option(24950, "PE"), _option(25000, "CE")])
        token_map = store.token_map("2025-05-22", [24950])
        assert token_map.ce == {24950: "24950CE"}
        assert token_map.pe == {24950: "24950PE"}

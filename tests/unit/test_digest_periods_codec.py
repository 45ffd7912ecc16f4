"""
tests/unit/test_digest_periods_codec.py — Day buckets and record encoding.

Covers:
  Periods: same-day equality, monotonic keys, aware → zone conversion,
           bounds as consecutive midnights (DST aware)
  Codec:   round-trip incl. properties, unicode, empty buckets, zero buckets;
           malformed documents rejected
  Models:  reference paths, record helpers
"""
from __future__ import annotations

import json
import unittest
from datetime import datetime, timedelta, timezone
from zoneinfo import ZoneInfo

from core.digest import codec
from core.digest.models import (
    DigestMessage,
    DigestRecord,
    digest_reference,
)
from core.digest.periods import SystemClock, period_bounds, period_date, period_of


UTC = ZoneInfo("UTC")
BERLIN = ZoneInfo("Europe/Berlin")


class TestPeriodOf(unittest.TestCase):

    def test_same_day_same_key(self):
        a = datetime(2024, 3, 5, 0, 0, 0)
        b = datetime(2024, 3, 5, 23, 59, 59)
        self.assertEqual(period_of(a, UTC), period_of(b, UTC))

    def test_midnight_starts_new_period(self):
        before = datetime(2024, 3, 5, 23, 59, 59)
        after = datetime(2024, 3, 6, 0, 0, 0)
        self.assertNotEqual(period_of(before, UTC), period_of(after, UTC))
        self.assertEqual(period_of(after, UTC), "2024-03-06")

    def test_keys_are_monotonic(self):
        start = datetime(2023, 12, 30, 22, 0)
        keys = [period_of(start + timedelta(hours=h), UTC) for h in range(0, 80, 3)]
        self.assertEqual(keys, sorted(keys))

    def test_aware_timestamp_converted_into_zone(self):
        # 23:30 UTC on Mar 5 is already Mar 6 in Berlin
        ts = datetime(2024, 3, 5, 23, 30, tzinfo=timezone.utc)
        self.assertEqual(period_of(ts, UTC), "2024-03-05")
        self.assertEqual(period_of(ts, BERLIN), "2024-03-06")

    def test_naive_timestamp_is_wall_clock(self):
        ts = datetime(2024, 3, 5, 23, 30)
        self.assertEqual(period_of(ts, BERLIN), "2024-03-05")

    def test_period_date_parses_key(self):
        self.assertEqual(period_date("2024-02-29").isoformat(), "2024-02-29")


class TestPeriodBounds(unittest.TestCase):

    def test_bounds_are_consecutive_midnights(self):
        start, end = period_bounds("2024-03-05", UTC)
        self.assertEqual(start, datetime(2024, 3, 5, tzinfo=UTC))
        self.assertEqual(end, datetime(2024, 3, 6, tzinfo=UTC))

    def test_dst_day_is_23_hours(self):
        start, end = period_bounds("2024-03-31", BERLIN)
        length = end.astimezone(timezone.utc) - start.astimezone(timezone.utc)
        self.assertEqual(length, timedelta(hours=23))

    def test_every_instant_inside_bounds_maps_to_key(self):
        start, end = period_bounds("2024-10-27", BERLIN)
        t = start.astimezone(timezone.utc)
        stop = end.astimezone(timezone.utc)
        while t < stop:
            self.assertEqual(period_of(t, BERLIN), "2024-10-27")
            t += timedelta(minutes=37)
        self.assertEqual(period_of(stop, BERLIN), "2024-10-28")


class TestSystemClock(unittest.TestCase):

    def test_now_in_given_zone(self):
        now = SystemClock(UTC).now()
        self.assertEqual(now.utcoffset(), timedelta(0))


class TestReferences(unittest.TestCase):

    def test_reference_path(self):
        self.assertEqual(digest_reference("alice"), "/digest/alice")

    def test_record_reference(self):
        self.assertEqual(DigestRecord(id="carol").reference, "/digest/carol")


class TestRecordHelpers(unittest.TestCase):

    def _record(self):
        return DigestRecord(
            id="alice",
            buckets={
                "2024-01-02": [DigestMessage("alice", "b", "2")],
                "2024-01-01": [DigestMessage("alice", "a", "1"), DigestMessage("alice", "a", "1")],
            },
        )

    def test_periods_sorted(self):
        self.assertEqual(self._record().periods(), ["2024-01-01", "2024-01-02"])

    def test_message_count_counts_duplicates(self):
        self.assertEqual(self._record().message_count(), 3)

    def test_has_prior_periods(self):
        rec = self._record()
        self.assertTrue(rec.has_prior_periods("2024-01-02"))
        only_current = DigestRecord(id="x", buckets={"2024-01-02": []})
        self.assertFalse(only_current.has_prior_periods("2024-01-02"))

    def test_copy_is_independent(self):
        rec = self._record()
        clone = rec.copy()
        clone.buckets["2024-01-01"].append(DigestMessage("alice", "c", "3"))
        self.assertEqual(len(rec.buckets["2024-01-01"]), 2)

    def test_messages_returns_copy(self):
        rec = self._record()
        rec.messages("2024-01-01").clear()
        self.assertEqual(len(rec.messages("2024-01-01")), 2)
        self.assertEqual(rec.messages("1999-01-01"), [])


class TestCodecRoundTrip(unittest.TestCase):

    def _assert_same(self, a: DigestRecord, b: DigestRecord):
        self.assertEqual(a.id, b.id)
        self.assertEqual(a.properties, b.properties)
        self.assertEqual(a.periods(), b.periods())
        for period in a.periods():
            self.assertEqual(
                [(m.subject, m.body) for m in a.messages(period)],
                [(m.subject, m.body) for m in b.messages(period)],
            )

    def test_full_record_roundtrip(self):
        rec = DigestRecord(
            id="alice",
            buckets={
                "2024-01-01": [
                    DigestMessage("alice", "Grüße", "Zeile 1\nZeile 2 — ✓"),
                    DigestMessage("alice", "<tag> & \"quotes\"", ""),
                ],
                "2024-01-02": [DigestMessage("alice", "second", "body")],
            },
            properties={"source": "forum", "lang": "de"},
        )
        self._assert_same(rec, codec.decode(codec.encode(rec)))

    def test_zero_buckets_roundtrip(self):
        rec = DigestRecord(id="empty")
        back = codec.decode(codec.encode(rec))
        self.assertEqual(back.buckets, {})
        self.assertEqual(back.id, "empty")

    def test_empty_bucket_is_kept(self):
        rec = DigestRecord(id="alice", buckets={"2024-01-01": []})
        back = codec.decode(codec.encode(rec))
        self.assertEqual(back.periods(), ["2024-01-01"])
        self.assertEqual(back.messages("2024-01-01"), [])

    def test_decoded_messages_belong_to_record(self):
        rec = DigestRecord(id="bob", buckets={"2024-01-01": [DigestMessage("bob", "s", "b")]})
        back = codec.decode(codec.encode(rec))
        self.assertEqual(back.messages("2024-01-01")[0].recipient_id, "bob")

    def test_encoding_is_ascii_and_ordered(self):
        rec = DigestRecord(
            id="ü",
            buckets={
                "2024-01-02": [DigestMessage("ü", "x", "y")],
                "2024-01-01": [DigestMessage("ü", "x", "y")],
            },
            properties={"z": "1", "a": "2"},
        )
        text = codec.encode(rec)
        text.encode("ascii")
        node = json.loads(text)["digest"]
        self.assertEqual([p["period"] for p in node["periods"]], ["2024-01-01", "2024-01-02"])
        self.assertEqual(list(node["properties"]), ["a", "z"])
        self.assertEqual(node["schema_version"], codec.SCHEMA_VERSION)

    def test_repeated_period_nodes_merge(self):
        tree = {"digest": {"id": "a", "periods": [
            {"period": "2024-01-01", "messages": [{"subject": "1", "body": ""}]},
            {"period": "2024-01-01", "messages": [{"subject": "2", "body": ""}]},
        ]}}
        rec = codec.from_tree(tree)
        self.assertEqual([m.subject for m in rec.messages("2024-01-01")], ["1", "2"])


class TestCodecRejects(unittest.TestCase):

    def test_invalid_json(self):
        with self.assertRaises(ValueError):
            codec.decode("{not json")

    def test_missing_digest_node(self):
        with self.assertRaises(ValueError):
            codec.decode('{"other": {}}')

    def test_missing_id(self):
        with self.assertRaises(ValueError):
            codec.from_tree({"digest": {"periods": []}})

    def test_period_without_key(self):
        with self.assertRaises(ValueError):
            codec.from_tree({"digest": {"id": "a", "periods": [{"messages": []}]}})


if __name__ == "__main__":
    unittest.main()

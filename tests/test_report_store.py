import re
import sqlite3
import tempfile
import unittest
from pathlib import Path
from unittest import mock

from change_feed import INSERT, UPDATE, ChangeFeed
from errors import ReportInputError, StoreError
from report_store import PHOTO_ATTACH_WARNING, MediaStorage, ReportStore, attach_photos


def make_record(**overrides):
    record = {
        "raw_text": "Saw a theft",
        "postcode": "S10 5GG",
        "time_description": "Yesterday",
        "time_known": True,
        "crime_type": "theft",
        "user_id": "user-1",
        "source": "form",
    }
    record.update(overrides)
    return record


class FailingPhotoConnection:
    """Wraps a sqlite connection so the Nth photo row insert fails."""

    def __init__(self, conn, lock, fail_on):
        self.conn = conn
        self.lock = lock
        self.fail_on = fail_on
        self.photo_inserts = 0
        self.rollback_lock_held = []

    def execute(self, sql, params=()):
        if sql.startswith("INSERT INTO report_photos"):
            self.photo_inserts += 1
            if self.photo_inserts == self.fail_on:
                raise sqlite3.IntegrityError("UNIQUE constraint failed: report_photos.id")
        return self.conn.execute(sql, params)

    def commit(self):
        self.conn.commit()

    def rollback(self):
        self.rollback_lock_held.append(self.lock.locked())
        self.conn.rollback()

    def close(self):
        self.conn.close()


class StoreTestCase(unittest.TestCase):
    def setUp(self):
        self._tmp = tempfile.TemporaryDirectory()
        root = Path(self._tmp.name)
        self.feed = ChangeFeed()
        self.media = MediaStorage(root / "media", "https://cdn.test/media")
        self.store = ReportStore(root / "reports.db", self.media, self.feed)
        self.sub = self.feed.subscribe()

    def tearDown(self):
        self.store.close()
        self._tmp.cleanup()

    def drain(self):
        events = []
        while True:
            event = self.sub.get(timeout=0)
            if event is None:
                return events
            events.append(event)


class TestReports(StoreTestCase):
    def test_create_returns_generated_id_and_publishes_insert(self):
        report = self.store.create_report(make_record())
        self.assertTrue(report["id"])
        self.assertTrue(report["created_at"])
        self.assertTrue(report["is_anonymous"])
        self.assertIsNone(report["ai_summary"])
        self.assertEqual(report["status"], "submitted")

        events = self.drain()
        self.assertEqual(len(events), 1)
        self.assertEqual((events[0].table, events[0].type), ("reports", INSERT))
        self.assertEqual(events[0].record["id"], report["id"])

    def test_empty_description_rejected(self):
        with self.assertRaises(ReportInputError):
            self.store.create_report(make_record(raw_text="   "))
        self.assertEqual(self.store.list_reports(), [])
        self.assertEqual(self.drain(), [])

    def test_identity_required(self):
        with self.assertRaises(ReportInputError):
            self.store.create_report(make_record(user_id=None))

    def test_list_is_newest_first_and_round_trips_booleans(self):
        first = self.store.create_report(make_record(raw_text="first", has_vehicle=True))
        second = self.store.create_report(make_record(raw_text="second"))
        reports = self.store.list_reports()
        self.assertEqual([r["id"] for r in reports], [second["id"], first["id"]])
        self.assertIs(reports[1]["has_vehicle"], True)
        self.assertIs(reports[0]["has_weapon"], False)
        self.assertEqual(self.store.get_report(first["id"])["raw_text"], "first")
        self.assertIsNone(self.store.get_report("missing"))

    def test_summary_is_back_filled_once(self):
        report = self.store.create_report(make_record())
        self.drain()
        self.assertTrue(self.store.update_summary(report["id"], "Theft reported in S10"))
        self.assertFalse(self.store.update_summary(report["id"], "A different summary"))
        self.assertEqual(self.store.get_report(report["id"])["ai_summary"], "Theft reported in S10")

        events = self.drain()
        self.assertEqual(len(events), 1)
        self.assertEqual(events[0].type, UPDATE)
        self.assertEqual(events[0].record["ai_summary"], "Theft reported in S10")

    def test_blank_summary_is_ignored(self):
        report = self.store.create_report(make_record())
        self.assertFalse(self.store.update_summary(report["id"], "  "))
        self.assertIsNone(self.store.get_report(report["id"])["ai_summary"])

    def test_reopening_database_keeps_reports(self):
        report = self.store.create_report(make_record())
        reopened = ReportStore(self.store.db_path, self.media)
        try:
            self.assertEqual(reopened.get_report(report["id"])["raw_text"], "Saw a theft")
        finally:
            reopened.close()


class TestPhotos(StoreTestCase):
    def test_generated_paths_are_unique_and_shaped(self):
        paths = {self.media.generate_path("IMG_0001.JPG") for _ in range(50)}
        self.assertEqual(len(paths), 50)
        for path in paths:
            self.assertRegex(path, r"^reports/\d+-[0-9a-f]+\.jpg$")
        self.assertTrue(self.media.generate_path("noext").endswith(".bin"))

    def test_upload_stores_bytes_and_row(self):
        report = self.store.create_report(make_record())
        result = self.store.upload_photo(report["id"], b"\x89PNG data", "photo.png")
        self.assertIsNone(result.warning)
        self.assertTrue(result.url.startswith("https://cdn.test/media/reports/"))
        self.assertEqual(result.photo["report_id"], report["id"])

        path = re.sub(r"^https://cdn.test/media/", "", result.url)
        self.assertEqual((self.media.root / path).read_bytes(), b"\x89PNG data")
        self.assertEqual(self.store.list_photos(report["id"]), [result.photo])

    def test_photos_keep_insertion_order(self):
        report = self.store.create_report(make_record())
        photos = self.store.insert_photos(report["id"], ["u1", "u2"])
        photos += self.store.insert_photos(report["id"], ["u3"])
        listed = self.store.list_photos(report["id"])
        self.assertEqual([p["file_path"] for p in listed], ["u1", "u2", "u3"])
        self.assertEqual([p["position"] for p in listed], [0, 1, 2])

    def test_insert_photos_publishes_one_event_per_row(self):
        report = self.store.create_report(make_record())
        self.drain()
        self.store.insert_photos(report["id"], ["u1", "u2"])
        events = self.drain()
        self.assertEqual([(e.table, e.type) for e in events], [("report_photos", INSERT)] * 2)

    def test_photo_for_unknown_report_fails(self):
        with self.assertRaises(StoreError):
            self.store.insert_photos("no-such-report", ["u1"])
        self.assertEqual(self.store.list_photos(), [])

    def test_row_failure_after_upload_is_a_warning(self):
        report = self.store.create_report(make_record())
        with mock.patch.object(self.store, "insert_photos", side_effect=StoreError("db gone")):
            result = self.store.upload_photo(report["id"], b"bytes", "photo.jpg")
        self.assertEqual(result.warning, PHOTO_ATTACH_WARNING)
        self.assertIsNone(result.photo)
        # The stored file is left in place.
        stored = list((self.media.root / "reports").iterdir())
        self.assertEqual(len(stored), 1)

    def test_empty_photo_rejected(self):
        with self.assertRaises(ReportInputError):
            self.store.upload_photo_bytes(b"", "empty.jpg")

    def test_media_paths_cannot_escape_root(self):
        with self.assertRaises(StoreError):
            self.media.store("../outside.txt", b"x")

    def test_attach_photos_joins_by_report_id(self):
        reports = [{"id": "a"}, {"id": "b"}]
        photos = [{"id": "p1", "report_id": "b"}, {"id": "p2", "report_id": "b"}, {"id": "p3", "report_id": "z"}]
        joined = attach_photos(reports, photos)
        self.assertEqual(joined[0]["photos"], [])
        self.assertEqual([p["id"] for p in joined[1]["photos"]], ["p1", "p2"])

    def test_failed_batch_leaves_no_rows(self):
        report = self.store.create_report(make_record())
        self.drain()
        conn = FailingPhotoConnection(self.store.db_conn, self.store.db_lock, fail_on=2)
        self.store.db_conn = conn
        with self.assertRaises(StoreError):
            self.store.insert_photos(report["id"], ["u1", "u2", "u3"])
        # Rolled back before another writer could take the lock and commit.
        self.assertEqual(conn.rollback_lock_held, [True])
        self.assertEqual(self.store.list_photos(report["id"]), [])
        self.assertEqual(self.drain(), [])

        # A later commit on the shared connection doesn't resurrect the rows.
        self.store.create_report(make_record(raw_text="another report"))
        self.assertEqual(self.store.list_photos(report["id"]), [])

    def test_sqlite_errors_become_store_errors(self):
        broken = mock.Mock()
        broken.execute.side_effect = sqlite3.OperationalError("disk I/O error")
        self.store.db_conn = broken
        with self.assertRaises(StoreError):
            self.store.create_report(make_record())


if __name__ == "__main__":
    unittest.main()

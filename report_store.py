"""
SQLite-backed store for reports and their photos, plus local object storage
for photo bytes.

Every committed insert/update is published on the change feed so realtime
subscribers can follow along.
"""
import logging
import os
import re
import secrets
import sqlite3
import threading
import time
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Iterable, List, Optional

from change_feed import INSERT, UPDATE, ChangeEvent, ChangeFeed
from errors import ReportInputError, StoreError

logger = logging.getLogger(__name__)

REPORT_COLUMNS = [
    "id",
    "created_at",
    "raw_text",
    "time_description",
    "time_known",
    "people_description",
    "people_names",
    "people_appearance",
    "people_contact_info",
    "crime_type",
    "location_hint",
    "postcode",
    "location",
    "incident_date",
    "ai_summary",
    "is_anonymous",
    "shared_with_crimestoppers",
    "has_vehicle",
    "has_weapon",
    "status",
    "user_id",
    "source",
]
BOOLEAN_COLUMNS = {"time_known", "is_anonymous", "shared_with_crimestoppers", "has_vehicle", "has_weapon"}
PHOTO_COLUMNS = ["id", "report_id", "file_path", "uploaded_at", "position"]

PHOTO_ATTACH_WARNING = "Report saved but some photos failed to attach"


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def attach_photos(reports: Iterable[Dict], photos: Iterable[Dict]) -> List[Dict]:
    """Join photos onto their reports by report_id, keeping upload order."""
    by_report: Dict[str, List[Dict]] = {}
    for photo in photos:
        by_report.setdefault(photo["report_id"], []).append(photo)
    return [{**report, "photos": by_report.get(report["id"], [])} for report in reports]


class MediaStorage:
    """Stores photo bytes on local disk and hands back public URLs."""

    def __init__(self, root: Path, base_url: str = "/media"):
        self.root = Path(root)
        self.base_url = base_url.rstrip("/")

    def generate_path(self, filename: str) -> str:
        ext = ""
        if "." in (filename or ""):
            ext = re.sub(r"[^A-Za-z0-9]", "", filename.rsplit(".", 1)[-1]).lower()[:8]
        ext = ext or "bin"
        return f"reports/{int(time.time() * 1000)}-{secrets.token_hex(6)}.{ext}"

    def public_url(self, path: str) -> str:
        return f"{self.base_url}/{path}"

    def resolve(self, path: str) -> Path:
        target = (self.root / path).resolve()
        if self.root.resolve() not in target.parents:
            raise StoreError(f"Refusing to store outside media root: {path}")
        return target

    def store(self, path: str, data: bytes) -> str:
        target = self.resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "xb") as f:
                f.write(data)
        except OSError as e:
            raise StoreError(f"Failed to store {path}: {e}") from e
        return self.public_url(path)


@dataclass
class PhotoUploadResult:
    url: str
    photo: Optional[Dict] = None
    warning: Optional[str] = None


class ReportStore:
    def __init__(self, db_path: Path, media: MediaStorage, feed: Optional[ChangeFeed] = None):
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self.media = media
        self.feed = feed or ChangeFeed()
        self.db_lock = threading.Lock()
        self.db_conn = sqlite3.connect(str(self.db_path), check_same_thread=False, timeout=30)
        self.db_conn.row_factory = sqlite3.Row
        self.db_conn.execute("PRAGMA journal_mode=WAL;")
        self.db_conn.execute("PRAGMA foreign_keys=ON;")
        self.init_db()

    def init_db(self) -> None:
        """Create the schema and add any columns older databases lack."""
        with self.db_lock:
            self.db_conn.execute("""
                CREATE TABLE IF NOT EXISTS reports (
                    id TEXT PRIMARY KEY,
                    created_at TEXT NOT NULL,
                    raw_text TEXT NOT NULL,
                    time_description TEXT,
                    time_known INTEGER NOT NULL DEFAULT 0,
                    people_description TEXT,
                    people_names TEXT,
                    people_appearance TEXT,
                    people_contact_info TEXT,
                    crime_type TEXT,
                    location_hint TEXT,
                    postcode TEXT,
                    location TEXT,
                    incident_date TEXT,
                    ai_summary TEXT,
                    is_anonymous INTEGER NOT NULL DEFAULT 1,
                    shared_with_crimestoppers INTEGER NOT NULL DEFAULT 0,
                    has_vehicle INTEGER NOT NULL DEFAULT 0,
                    has_weapon INTEGER NOT NULL DEFAULT 0,
                    status TEXT NOT NULL DEFAULT 'submitted',
                    user_id TEXT NOT NULL,
                    source TEXT
                )
            """)

            existing_cols = {
                row["name"]
                for row in self.db_conn.execute("PRAGMA table_info(reports)").fetchall()
            }
            migrations = {
                "incident_date": "ALTER TABLE reports ADD COLUMN incident_date TEXT",
                "ai_summary": "ALTER TABLE reports ADD COLUMN ai_summary TEXT",
                "source": "ALTER TABLE reports ADD COLUMN source TEXT",
            }
            for col, ddl in migrations.items():
                if col not in existing_cols:
                    self.db_conn.execute(ddl)

            self.db_conn.execute("CREATE INDEX IF NOT EXISTS idx_reports_created_at ON reports(created_at)")
            self.db_conn.execute("CREATE INDEX IF NOT EXISTS idx_reports_postcode ON reports(postcode)")

            self.db_conn.execute("""
                CREATE TABLE IF NOT EXISTS report_photos (
                    id TEXT PRIMARY KEY,
                    report_id TEXT NOT NULL,
                    file_path TEXT NOT NULL,
                    uploaded_at TEXT NOT NULL,
                    position INTEGER NOT NULL DEFAULT 0,
                    FOREIGN KEY(report_id) REFERENCES reports(id) ON DELETE CASCADE
                )
            """)
            self.db_conn.execute("CREATE INDEX IF NOT EXISTS idx_report_photos_report_id ON report_photos(report_id)")
            self.db_conn.commit()

    def close(self) -> None:
        with self.db_lock:
            self.db_conn.close()

    def _report_from_row(self, row: sqlite3.Row) -> Dict:
        report = {col: row[col] for col in REPORT_COLUMNS}
        for col in BOOLEAN_COLUMNS:
            report[col] = bool(report[col])
        return report

    def _photo_from_row(self, row: sqlite3.Row) -> Dict:
        return {col: row[col] for col in PHOTO_COLUMNS}

    def _publish(self, table: str, change_type: str, record: Dict) -> None:
        self.feed.publish(ChangeEvent(table=table, type=change_type, record=dict(record)))

    def create_report(self, record: Dict) -> Dict:
        """Insert a validated report record and return it with its id."""
        raw_text = str(record.get("raw_text") or "").strip()
        if not raw_text:
            raise ReportInputError("Report description is required")
        if not record.get("user_id"):
            raise ReportInputError("Report must be attributed to a submitting identity")

        report = {col: record.get(col) for col in REPORT_COLUMNS}
        report["id"] = uuid.uuid4().hex
        report["created_at"] = utc_now_iso()
        report["raw_text"] = raw_text
        report["ai_summary"] = None
        report["is_anonymous"] = True
        report["status"] = record.get("status") or "submitted"
        for col in BOOLEAN_COLUMNS - {"is_anonymous"}:
            report[col] = bool(record.get(col))

        placeholders = ", ".join("?" for _ in REPORT_COLUMNS)
        values = [
            int(report[col]) if col in BOOLEAN_COLUMNS else report[col]
            for col in REPORT_COLUMNS
        ]
        try:
            with self.db_lock:
                self.db_conn.execute(
                    f"INSERT INTO reports ({', '.join(REPORT_COLUMNS)}) VALUES ({placeholders})",
                    values,
                )
                self.db_conn.commit()
        except sqlite3.Error as e:
            logger.error(f"Failed to insert report: {e}")
            raise StoreError(f"Failed to save report: {e}") from e

        logger.info(f"Stored report {report['id']} ({report.get('source') or 'unknown source'})")
        self._publish("reports", INSERT, report)
        return report

    def get_report(self, report_id: str) -> Optional[Dict]:
        with self.db_lock:
            row = self.db_conn.execute(
                f"SELECT {', '.join(REPORT_COLUMNS)} FROM reports WHERE id = ?",
                (report_id,),
            ).fetchone()
        return self._report_from_row(row) if row else None

    def list_reports(self, limit: Optional[int] = None) -> List[Dict]:
        """All reports, newest first."""
        sql = f"SELECT {', '.join(REPORT_COLUMNS)} FROM reports ORDER BY created_at DESC, rowid DESC"
        params: List[object] = []
        if limit is not None:
            sql += " LIMIT ?"
            params.append(int(limit))
        with self.db_lock:
            rows = self.db_conn.execute(sql, params).fetchall()
        return [self._report_from_row(row) for row in rows]

    def list_photos(self, report_id: Optional[str] = None) -> List[Dict]:
        """Photos in upload order, optionally for one report."""
        sql = f"SELECT {', '.join(PHOTO_COLUMNS)} FROM report_photos"
        params: List[object] = []
        if report_id is not None:
            sql += " WHERE report_id = ?"
            params.append(report_id)
        sql += " ORDER BY rowid ASC"
        with self.db_lock:
            rows = self.db_conn.execute(sql, params).fetchall()
        return [self._photo_from_row(row) for row in rows]

    def list_reports_with_photos(self) -> List[Dict]:
        return attach_photos(self.list_reports(), self.list_photos())

    def update_summary(self, report_id: str, summary: str) -> bool:
        """Back-fill the AI summary. Only the first summary sticks."""
        summary = (summary or "").strip()
        if not summary:
            return False
        try:
            with self.db_lock:
                cur = self.db_conn.execute(
                    "UPDATE reports SET ai_summary = ? WHERE id = ? AND ai_summary IS NULL",
                    (summary, report_id),
                )
                self.db_conn.commit()
        except sqlite3.Error as e:
            raise StoreError(f"Failed to update summary for {report_id}: {e}") from e

        if cur.rowcount == 0:
            return False
        report = self.get_report(report_id)
        if report:
            self._publish("reports", UPDATE, report)
        return True

    def insert_photos(self, report_id: str, urls: List[str]) -> List[Dict]:
        """Record already-uploaded photo URLs against a report, in order."""
        if not urls:
            return []
        now = utc_now_iso()
        photos: List[Dict] = []
        # The whole batch commits or rolls back under one lock hold.
        with self.db_lock:
            try:
                start = self.db_conn.execute(
                    "SELECT COUNT(*) AS c FROM report_photos WHERE report_id = ?",
                    (report_id,),
                ).fetchone()["c"]
                for i, url in enumerate(urls):
                    photo = {
                        "id": uuid.uuid4().hex,
                        "report_id": report_id,
                        "file_path": url,
                        "uploaded_at": now,
                        "position": int(start) + i,
                    }
                    self.db_conn.execute(
                        f"INSERT INTO report_photos ({', '.join(PHOTO_COLUMNS)}) VALUES (?, ?, ?, ?, ?)",
                        [photo[col] for col in PHOTO_COLUMNS],
                    )
                    photos.append(photo)
                self.db_conn.commit()
            except sqlite3.Error as e:
                self.db_conn.rollback()
                logger.error(f"Error inserting photos for report {report_id}: {e}")
                raise StoreError(f"Failed to attach photos: {e}") from e

        for photo in photos:
            self._publish("report_photos", INSERT, photo)
        return photos

    def upload_photo_bytes(self, data: bytes, filename: str) -> str:
        if not data:
            raise ReportInputError(f"Photo '{filename}' is empty")
        path = self.media.generate_path(filename)
        return self.media.store(path, data)

    def upload_photo(self, report_id: str, data: bytes, filename: str) -> PhotoUploadResult:
        """Upload bytes, then record the row.

        If the row insert fails the stored file is left behind and a warning
        is returned; the report itself is already saved.
        """
        url = self.upload_photo_bytes(data, filename)
        try:
            photos = self.insert_photos(report_id, [url])
        except StoreError as e:
            logger.warning(f"Photo stored at {url} but not attached to report {report_id}: {e}")
            return PhotoUploadResult(url=url, warning=PHOTO_ATTACH_WARNING)
        return PhotoUploadResult(url=url, photo=photos[0])

    def media_file(self, path: str) -> Optional[Path]:
        target = self.media.resolve(path)
        return target if os.path.isfile(target) else None

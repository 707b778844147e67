"""
Realtime synchronization of reports and photos.

RealtimeSync follows the store's change feed and turns raw row events into
"new report" / "photos updated" / "report updated" notifications.
ReportCollection is the client-side state those notifications are merged into.
"""
import logging
import threading
import time
from typing import Callable, Dict, List, Optional

from change_feed import INSERT, UPDATE, ChangeEvent, ChangeFeed, Subscription

logger = logging.getLogger(__name__)

UNSUBSCRIBED = "unsubscribed"
CONNECTING = "connecting"
SUBSCRIBED = "subscribed"

NewReportHandler = Callable[[Dict, List[Dict]], None]
PhotosUpdatedHandler = Callable[[str, List[Dict]], None]
ReportUpdatedHandler = Callable[[Dict], None]


class RealtimeSync:
    """Subscribes to report/photo change events and notifies a consumer.

    No de-duplication happens here; consumers merge by id.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        store,
        on_new_report: NewReportHandler,
        on_photos_updated: PhotosUpdatedHandler,
        on_report_updated: Optional[ReportUpdatedHandler] = None,
        poll_interval: float = 0.5,
        name: str = "reports",
    ):
        self.feed = feed
        self.store = store
        self.on_new_report = on_new_report
        self.on_photos_updated = on_photos_updated
        self.on_report_updated = on_report_updated
        self.poll_interval = poll_interval
        self.name = name
        self.status = UNSUBSCRIBED
        self.last_error: Optional[str] = None
        self.last_event_time: Optional[float] = None
        self.events_handled = 0
        self.subscription: Optional[Subscription] = None
        self.thread: Optional[threading.Thread] = None
        self._stop_event = threading.Event()
        self._lock = threading.Lock()

    @property
    def is_connected(self) -> bool:
        return self.status == SUBSCRIBED

    def subscribe(self, background: bool = True) -> bool:
        """Start receiving notifications. Returns False if the subscription failed."""
        with self._lock:
            if self.status != UNSUBSCRIBED:
                return self.status == SUBSCRIBED
            self.status = CONNECTING

        logger.info(f"Setting up realtime subscription '{self.name}'")
        try:
            subscription = self.feed.subscribe()
        except Exception as e:
            with self._lock:
                self.status = UNSUBSCRIBED
                self.last_error = str(e)
            logger.error(f"Realtime subscription error: {e}")
            return False

        with self._lock:
            self.subscription = subscription
            self.last_error = None
            self._stop_event.clear()
            self.status = SUBSCRIBED

        if background:
            self.thread = threading.Thread(target=self._run, name=f"Realtime-{self.name}", daemon=True)
            self.thread.start()
        logger.info(f"Successfully subscribed to realtime updates ('{self.name}')")
        return True

    def disconnect(self, timeout: float = 5) -> None:
        """Stop notifications. An in-flight notification is allowed to finish."""
        with self._lock:
            if self.status == UNSUBSCRIBED:
                return
            self._stop_event.set()
            subscription = self.subscription
            self.subscription = None
            self.status = UNSUBSCRIBED
        if subscription:
            subscription.unsubscribe()
        thread = self.thread
        if thread and thread.is_alive() and thread is not threading.current_thread():
            thread.join(timeout=timeout)
        self.thread = None
        logger.info(f"Realtime subscription '{self.name}' closed")

    def pump(self, timeout: Optional[float] = None) -> bool:
        """Handle at most one pending event. Returns True if one was handled."""
        subscription = self.subscription
        if subscription is None or self._stop_event.is_set():
            return False
        event = subscription.get(timeout=timeout)
        if event is None or self._stop_event.is_set():
            return False
        self.handle_event(event)
        return True

    def _run(self) -> None:
        while not self._stop_event.is_set():
            try:
                self.pump(timeout=self.poll_interval)
            except Exception as e:
                self.last_error = str(e)
                logger.error(f"Error handling realtime event on '{self.name}': {e}")

    def handle_event(self, event: ChangeEvent) -> None:
        if self._stop_event.is_set() and self.status == UNSUBSCRIBED:
            return
        self.last_event_time = time.time()
        self.events_handled += 1

        if event.table == "reports" and event.type == INSERT:
            report = event.record
            photos = self.store.list_photos(report["id"])
            logger.debug(f"New report received via realtime: {report['id']}")
            self.on_new_report(report, photos)
        elif event.table == "report_photos" and event.type == INSERT:
            report_id = event.record["report_id"]
            photos = self.store.list_photos(report_id)
            self.on_photos_updated(report_id, photos)
        elif event.table == "reports" and event.type == UPDATE:
            if self.on_report_updated:
                self.on_report_updated(event.record)
        else:
            logger.debug(f"Ignoring {event.type} on {event.table}")

    def get_status(self) -> Dict:
        return {
            "name": self.name,
            "status": self.status,
            "connected": self.is_connected,
            "events_handled": self.events_handled,
            "last_event_time": self.last_event_time,
            "last_error": self.last_error,
        }


class ReportCollection:
    """Client-side report list, newest first, merged by report id.

    A client's own submission comes back through the change stream as well,
    so inserts are upserts rather than blind prepends.
    """

    def __init__(self):
        self._order: List[str] = []
        self._reports: Dict[str, Dict] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        with self._lock:
            return len(self._order)

    def __contains__(self, report_id: object) -> bool:
        with self._lock:
            return report_id in self._reports

    def load(self, reports: List[Dict]) -> None:
        """Replace everything with a full load (already newest first)."""
        with self._lock:
            self._order = []
            self._reports = {}
            for report in reports:
                if report["id"] in self._reports:
                    continue
                self._order.append(report["id"])
                self._reports[report["id"]] = {**report, "photos": list(report.get("photos") or [])}

    def upsert(self, report: Dict, photos: Optional[List[Dict]] = None) -> bool:
        """Add a new report at the front, or refresh one we already have. True if new."""
        with self._lock:
            report_id = report["id"]
            existing = self._reports.get(report_id)
            merged = {**(existing or {}), **report}
            if photos is not None:
                merged["photos"] = list(photos)
            else:
                merged.setdefault("photos", [])
            self._reports[report_id] = merged
            if existing is None:
                self._order.insert(0, report_id)
                return True
            return False

    def update(self, report: Dict) -> bool:
        """Apply a row update to a known report, keeping its photos. False if unknown."""
        with self._lock:
            existing = self._reports.get(report["id"])
            if existing is None:
                return False
            self._reports[report["id"]] = {**existing, **report, "photos": existing.get("photos", [])}
            return True

    def replace_photos(self, report_id: str, photos: List[Dict]) -> bool:
        with self._lock:
            existing = self._reports.get(report_id)
            if existing is None:
                return False
            existing["photos"] = list(photos)
            return True

    def get(self, report_id: str) -> Optional[Dict]:
        with self._lock:
            report = self._reports.get(report_id)
            return dict(report) if report else None

    def snapshot(self) -> List[Dict]:
        with self._lock:
            return [dict(self._reports[rid]) for rid in self._order]

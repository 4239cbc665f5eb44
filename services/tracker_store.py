from __future__ import annotations

import json
import logging
import os
import threading
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from services.errors import AssetNotFoundError, TrackerCorruptError
from services.models import AssetStore

ProcessedRecord = Dict[str, List[str]]
FailedRecord = Dict[str, Dict[str, Any]]
AlertFn = Callable[[str, str], None]

logger = logging.getLogger(__name__)


class LocalJsonBackend:
    """Keeps the JSON records as files in a local directory."""

    def __init__(self, directory: Path | str):
        self.directory = Path(directory)

    def read(self, name: str) -> Optional[bytes]:
        path = self.directory / name
        if not path.exists():
            return None
        return path.read_bytes()

    def write(self, name: str, data: bytes) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        path = self.directory / name
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_bytes(data)
        os.replace(tmp, path)


class DriveJsonBackend:
    """Keeps the JSON records as files inside one asset-store folder."""

    def __init__(self, store: AssetStore, folder_id: str):
        self.store = store
        self.folder_id = folder_id

    def read(self, name: str) -> Optional[bytes]:
        found = self.store.list(self.folder_id, folders_only=False, name=name)
        if not found:
            return None
        try:
            return self.store.read_bytes(found[0])
        except AssetNotFoundError:
            return None

    def write(self, name: str, data: bytes) -> None:
        self.store.write_bytes(self.folder_id, name, data, mimetype="application/json")


def _parse_processed(raw: bytes) -> ProcessedRecord:
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise TrackerCorruptError(f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise TrackerCorruptError(f"expected an object, got {type(data).__name__}")
    if "processedOrders" in data:
        data = data["processedOrders"]
        if not isinstance(data, dict):
            raise TrackerCorruptError("processedOrders is not an object")

    record: ProcessedRecord = {}
    for file_key, ids in data.items():
        if not isinstance(ids, list):
            logger.warning("tracker entry ignored file=%s value=%r (expected a list of order ids)", file_key, ids)
            continue
        seen: List[str] = []
        for x in ids:
            s = str(x).strip()
            if s and s not in seen:
                seen.append(s)
        record[str(file_key)] = seen
    return record


def _parse_failed(raw: bytes) -> FailedRecord:
    try:
        data = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as e:
        raise TrackerCorruptError(f"invalid JSON: {e}") from e
    if not isinstance(data, dict):
        raise TrackerCorruptError(f"expected an object, got {type(data).__name__}")
    if "failedOrders" in data:
        data = data["failedOrders"]
        if not isinstance(data, dict):
            raise TrackerCorruptError("failedOrders is not an object")

    record: FailedRecord = {}
    for key, entry in data.items():
        if isinstance(entry, str):
            entry = {"reason": entry}
        if not isinstance(entry, dict):
            continue
        record[str(key)] = dict(entry)
    return record


class TrackerStore:
    """Durable processed-orders and failed-orders records.

    Nothing is cached between calls: every mutation reloads the current record,
    applies the change and writes the whole record back while holding the
    writer lock, so concurrent order workers never lose each other's updates.
    """

    def __init__(
        self,
        backend: LocalJsonBackend | DriveJsonBackend,
        *,
        tracker_name: str = "processed_tracker.json",
        failed_name: str = "failed_orders_tracker.json",
        alert: Optional[AlertFn] = None,
    ):
        self.backend = backend
        self.tracker_name = tracker_name
        self.failed_name = failed_name
        self.alert = alert
        self._lock = threading.RLock()

    def _report_corrupt(self, name: str, err: Exception) -> None:
        logger.error("tracker corrupted name=%s reason=%s; continuing with an empty record", name, err)
        if self.alert is None:
            return
        try:
            self.alert(
                "Tracker File Corrupted",
                f"{name} is not a valid tracker record and was reset to empty.\nError: {err}",
            )
        except Exception as alert_err:
            logger.error("tracker corruption alert failed: %s", alert_err)

    def load(self) -> ProcessedRecord:
        raw = self.backend.read(self.tracker_name)
        if raw is None:
            logger.info("no tracker found name=%s; starting fresh", self.tracker_name)
            return {}
        try:
            record = _parse_processed(raw)
        except TrackerCorruptError as e:
            self._report_corrupt(self.tracker_name, e)
            return {}
        logger.debug("tracker loaded files=%d", len(record))
        return record

    def save(self, record: ProcessedRecord) -> None:
        payload = {"processedOrders": {k: list(v) for k, v in record.items()}}
        self.backend.write(self.tracker_name, json.dumps(payload, ensure_ascii=False, indent=2).encode("utf-8"))

    def load_failed(self) -> FailedRecord:
        raw = self.backend.read(self.failed_name)
        if raw is None:
            return {}
        try:
            return _parse_failed(raw)
        except TrackerCorruptError as e:
            self._report_corrupt(self.failed_name, e)
            return {}

    def save_failed(self, record: FailedRecord) -> None:
        payload = {"failedOrders": record}
        self.backend.write(self.failed_name, json.dumps(payload, ensure_ascii=False, indent=2).encode("utf-8"))

    def record_success(self, tracking_key: str, order_id: str) -> ProcessedRecord:
        with self._lock:
            record = self.load()
            ids = record.setdefault(tracking_key, [])
            if order_id not in ids:
                ids.append(order_id)
            self.save(record)
            return record

    def update_failed(self, mutate: Callable[[FailedRecord], bool]) -> FailedRecord:
        """Reload the failed record, apply ``mutate`` and save when it reports a change."""
        with self._lock:
            record = self.load_failed()
            if mutate(record):
                self.save_failed(record)
            return record

    def remove_failed(self, order_id: str) -> bool:
        """Drop one entry from the failed record; False when it was not there."""
        with self._lock:
            record = self.load_failed()
            if order_id not in record:
                return False
            record.pop(order_id)
            self.save_failed(record)
            return True

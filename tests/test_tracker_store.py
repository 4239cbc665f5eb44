"""Tests for the processed / failed order records (services/tracker_store.py)."""

import json
import threading

from services.tracker_store import DriveJsonBackend, LocalJsonBackend, TrackerStore

from tests.helpers import FakeAssetStore


class AlertRecorder:
    def __init__(self):
        self.alerts = []

    def __call__(self, subject, message):
        self.alerts.append((subject, message))


def make_tracker(tmp_path, alert=None):
    return TrackerStore(LocalJsonBackend(tmp_path / "state"), alert=alert)


class TestLoad:
    def test_missing_record_is_empty(self, tmp_path):
        assert make_tracker(tmp_path).load() == {}
        assert make_tracker(tmp_path).load_failed() == {}

    def test_corrupt_record_is_reset_and_alerted(self, tmp_path):
        alert = AlertRecorder()
        tracker = make_tracker(tmp_path, alert)
        (tmp_path / "state").mkdir()
        (tmp_path / "state" / "processed_tracker.json").write_text("{not json", encoding="utf-8")

        assert tracker.load() == {}
        assert len(alert.alerts) == 1
        assert alert.alerts[0][0] == "Tracker File Corrupted"

    def test_non_object_record_is_corrupt(self, tmp_path):
        alert = AlertRecorder()
        tracker = make_tracker(tmp_path, alert)
        (tmp_path / "state").mkdir()
        (tmp_path / "state" / "processed_tracker.json").write_text("[1, 2]", encoding="utf-8")

        assert tracker.load() == {}
        assert len(alert.alerts) == 1

    def test_flat_shape_is_accepted(self, tmp_path):
        tracker = make_tracker(tmp_path)
        (tmp_path / "state").mkdir()
        (tmp_path / "state" / "processed_tracker.json").write_text(
            json.dumps({"orders.csv": ["1", 2, "1"], "bad.csv": "oops"}), encoding="utf-8"
        )

        assert tracker.load() == {"orders.csv": ["1", "2"]}

    def test_failed_reason_strings_are_upgraded(self, tmp_path):
        tracker = make_tracker(tmp_path)
        (tmp_path / "state").mkdir()
        (tmp_path / "state" / "failed_orders_tracker.json").write_text(
            json.dumps({"1002": "Product folder missing"}), encoding="utf-8"
        )

        assert tracker.load_failed() == {"1002": {"reason": "Product folder missing"}}


class TestSave:
    def test_save_writes_wrapped_shape(self, tmp_path):
        tracker = make_tracker(tmp_path)

        tracker.save({"orders.csv": ["1001"]})

        raw = json.loads((tmp_path / "state" / "processed_tracker.json").read_text(encoding="utf-8"))
        assert raw == {"processedOrders": {"orders.csv": ["1001"]}}
        assert not (tmp_path / "state" / "processed_tracker.json.tmp").exists()

    def test_record_success_appends_once(self, tmp_path):
        tracker = make_tracker(tmp_path)

        tracker.record_success("orders.csv", "1001")
        tracker.record_success("orders.csv", "1001")
        tracker.record_success("orders.csv", "1002")

        assert tracker.load() == {"orders.csv": ["1001", "1002"]}

    def test_record_success_reloads_before_writing(self, tmp_path):
        first = make_tracker(tmp_path)
        second = make_tracker(tmp_path)

        first.record_success("a.csv", "1")
        second.record_success("b.csv", "2")

        assert first.load() == {"a.csv": ["1"], "b.csv": ["2"]}

    def test_concurrent_successes_are_not_lost(self, tmp_path):
        tracker = make_tracker(tmp_path)
        ids = [str(i) for i in range(20)]
        threads = [threading.Thread(target=tracker.record_success, args=("orders.csv", i)) for i in ids]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sorted(tracker.load()["orders.csv"], key=int) == ids

    def test_update_failed_saves_only_on_change(self, tmp_path):
        tracker = make_tracker(tmp_path)

        tracker.update_failed(lambda record: False)
        assert not (tmp_path / "state" / "failed_orders_tracker.json").exists()

        tracker.update_failed(lambda record: record.update({"1": {"count": 1}}) is None)
        assert tracker.load_failed() == {"1": {"count": 1}}

    def test_remove_failed(self, tmp_path):
        tracker = make_tracker(tmp_path)
        tracker.save_failed({"1002": {"count": 4}, "1003": {"count": 1}})

        assert tracker.remove_failed("1002") is True
        assert tracker.remove_failed("1002") is False
        assert tracker.load_failed() == {"1003": {"count": 1}}


class TestDriveBackend:
    def test_records_live_in_drive_folder(self):
        store = FakeAssetStore()
        folder = store.add_folder("drive", "Tracker")
        tracker = TrackerStore(DriveJsonBackend(store, folder.id))

        tracker.record_success("orders.csv", "1001")
        tracker.record_success("orders.csv", "1002")

        assert store.names_in(folder.id) == ["processed_tracker.json"]
        assert tracker.load() == {"orders.csv": ["1001", "1002"]}

# tools/tracker_report.py
from __future__ import annotations

import argparse
import json
import logging
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from services.config import Settings
from services.tracker_store import DriveJsonBackend, LocalJsonBackend, TrackerStore


def open_tracker(settings: Settings) -> TrackerStore:
    if settings.tracker_backend == "local":
        backend = LocalJsonBackend(settings.tracker_local_dir)
    else:
        from services.gdrive_store import DriveAssetStore

        store = DriveAssetStore(
            ROOT / settings.gdrive_credentials_file,
            num_retries=settings.store_num_retries,
            timeout_sec=settings.store_timeout_sec,
        )
        backend = DriveJsonBackend(store, settings.tracker_folder_id)
    return TrackerStore(backend, tracker_name=settings.tracker_file_name, failed_name=settings.failed_file_name)


def build_report(tracker: TrackerStore) -> dict:
    record = tracker.load()
    failed = tracker.load_failed()
    return {
        "trackedFiles": len(record),
        "deliveredOrders": sum(len(v) for v in record.values()),
        "files": {k: len(v) for k, v in sorted(record.items())},
        "failedOrders": failed,
    }


def main() -> int:
    parser = argparse.ArgumentParser(description="Show the delivery tracker and failed-orders record.")
    parser.add_argument("--clear-failed", metavar="ORDER_ID", help="Remove one entry from the failed-orders record")
    args = parser.parse_args()

    settings = Settings.from_env()
    logging.basicConfig(level=logging.WARNING, format="%(asctime)s %(levelname)s [%(name)s] %(message)s")
    tracker = open_tracker(settings)

    if args.clear_failed:
        if tracker.remove_failed(args.clear_failed):
            print("OK cleared:", args.clear_failed)
            return 0
        print("not in failed record:", args.clear_failed)
        return 1

    print(json.dumps(build_report(tracker), ensure_ascii=False, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())

# scripts/orchestrator.py
from __future__ import annotations

import argparse
import logging
import signal
import sys
import threading
import traceback
import uuid
from dataclasses import dataclass
from pathlib import Path
from zoneinfo import ZoneInfo

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from services.asset_resolver import AssetResolver
from services.config import Settings
from services.email_sender.brevo_api import BrevoMailer
from services.email_sender.smtp_mailer import SmtpMailer
from services.failure_policy import AdminAlerter, FailurePolicy
from services.fulfillment import FulfillmentOrchestrator
from services.gdrive_store import DriveAssetStore
from services.models import Notifier
from services.packager import ZipPackager
from services.scheduler import Scheduler
from services.single_flight import InstanceLock, SingleFlight
from services.tracker_store import DriveJsonBackend, LocalJsonBackend, TrackerStore

RUN_INSTANCE_ID = uuid.uuid4().hex[:12]
JOBS = ("scan", "cleanup", "daily")

logger = logging.getLogger("orchestrator")


@dataclass
class App:
    settings: Settings
    store: DriveAssetStore
    tracker: TrackerStore
    policy: FailurePolicy
    alerter: AdminAlerter
    orchestrator: FulfillmentOrchestrator


def build_notifier(settings: Settings) -> Notifier:
    if settings.mail_backend == "brevo":
        return BrevoMailer(
            api_key=settings.brevo_api_key,
            sender_email=settings.sender_email,
            sender_name=settings.sender_name,
            api_url=settings.brevo_api_url,
            max_attempts=settings.mail_max_attempts,
            retry_delay_sec=settings.mail_retry_delay_sec,
        )
    return SmtpMailer(
        host=settings.smtp_host,
        port=settings.smtp_port,
        user=settings.smtp_user,
        password=settings.smtp_pass,
        sender=settings.smtp_from,
        sender_name=settings.sender_name,
        use_ssl=settings.smtp_ssl,
        max_attempts=settings.mail_max_attempts,
        retry_delay_sec=settings.mail_retry_delay_sec,
    )


def build_app(settings: Settings, *, dry_run: bool = False) -> App:
    store = DriveAssetStore(
        ROOT / settings.gdrive_credentials_file,
        num_retries=settings.store_num_retries,
        timeout_sec=settings.store_timeout_sec,
    )
    notifier = build_notifier(settings)
    alerter = AdminAlerter(notifier, settings.admin_email)

    if settings.tracker_backend == "local":
        backend = LocalJsonBackend(settings.tracker_local_dir)
    else:
        backend = DriveJsonBackend(store, settings.tracker_folder_id)
    tracker = TrackerStore(
        backend,
        tracker_name=settings.tracker_file_name,
        failed_name=settings.failed_file_name,
        alert=alerter,
    )
    policy = FailurePolicy(
        tracker, alerter, max_attempts=settings.max_order_attempts, tz=ZoneInfo(settings.daily_reset_tz)
    )
    resolver = AssetResolver(
        store,
        root_folder_id=settings.assets_root_folder_id,
        collections=settings.collection_folders,
        format_variants=settings.product_format_variants,
        thank_you_folder_id=settings.thank_you_folder_id,
        thank_you_folder_name=settings.thank_you_folder_name,
        match_order_size=settings.match_order_size,
    )
    orchestrator = FulfillmentOrchestrator(
        settings,
        store=store,
        tracker=tracker,
        resolver=resolver,
        notifier=notifier,
        policy=policy,
        packager=ZipPackager(),
        dry_run=dry_run,
    )
    return App(settings, store, tracker, policy, alerter, orchestrator)


def build_scheduler(app: App, guard: SingleFlight) -> Scheduler:
    def on_error(job: str, err: Exception) -> None:
        app.policy.record_error(f"{job}: {type(err).__name__}: {err}")
        app.alerter(
            f"Recurring job failed: {job}",
            f"Error: {type(err).__name__}: {err}\n\n{traceback.format_exc()}",
        )

    def scan() -> None:
        report = app.orchestrator.process_all_orders()
        logger.info("scan done delivered=%d failed=%d", report.processed_count, report.failed_count)

    def cleanup() -> None:
        moved = app.orchestrator.sweep_processed_files()
        deleted = app.orchestrator.cleanup_stale_deliverables()
        logger.info("cleanup done moved=%d deleted=%d", len(moved), len(deleted))

    def daily() -> None:
        app.policy.send_daily_summary()
        app.policy.reset_daily_failures()

    scheduler = Scheduler(guard, ZoneInfo(app.settings.daily_reset_tz), on_error=on_error)
    scheduler.add_interval("scan", scan, app.settings.order_scan_interval_sec)
    scheduler.add_interval("cleanup", cleanup, app.settings.cleanup_interval_sec)
    scheduler.add_daily("daily", daily)
    return scheduler


def start_status_server(app: App) -> threading.Thread:
    import uvicorn

    from services.status_api import create_app

    config = uvicorn.Config(
        create_app(app.tracker, app.policy),
        host="0.0.0.0",
        port=app.settings.status_port,
        log_level="warning",
    )
    server = uvicorn.Server(config)
    t = threading.Thread(target=server.run, name="status-api", daemon=True)
    t.start()
    logger.info("status api listening port=%d", app.settings.status_port)
    return t


def main() -> int:
    parser = argparse.ArgumentParser(description="Deliver digital-art orders from order-export files.")
    parser.add_argument("--once", action="store_true", help="Run the selected job(s) once and exit")
    parser.add_argument("--job", choices=JOBS, action="append", help="Job to run with --once (repeatable)")
    parser.add_argument("--dry-run", action="store_true", help="Resolve assets only; no upload, email or tracker writes")
    parser.add_argument("--serve-status", action="store_true", help="Expose /health and /status over HTTP")
    args = parser.parse_args()

    settings = Settings.from_env()
    logging.basicConfig(
        level=getattr(logging, settings.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    missing = settings.validate()
    if missing:
        logger.error("missing configuration: %s", ", ".join(missing))
        return 2

    lock = InstanceLock(settings.lock_file, RUN_INSTANCE_ID)
    try:
        lock.acquire()
    except RuntimeError as e:
        logger.error("%s", e)
        return 1

    try:
        app = build_app(settings, dry_run=args.dry_run)
        guard = SingleFlight()
        scheduler = build_scheduler(app, guard)

        if args.once:
            for name in args.job or ["scan"]:
                scheduler.run_job(name)
            return 0

        if args.serve_status:
            start_status_server(app)

        stop = threading.Event()
        signal.signal(signal.SIGTERM, lambda *_: stop.set())
        logger.info("scheduler started run=%s scan_every=%ds cleanup_every=%ds", RUN_INSTANCE_ID,
                    settings.order_scan_interval_sec, settings.cleanup_interval_sec)
        try:
            scheduler.run_forever(stop)
        except KeyboardInterrupt:
            logger.info("interrupted; shutting down")
        return 0
    finally:
        lock.release()


if __name__ == "__main__":
    raise SystemExit(main())

from __future__ import annotations

import logging
import re
import tempfile
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timedelta, timezone
from pathlib import Path, PurePath
from typing import Callable, Dict, List, Optional, Set, Tuple

from services.asset_resolver import AssetResolver, normalize_product_name
from services.config import Settings
from services.email_sender.templates import delivery_email, download_link, mask_email
from services.errors import (
    AssetStoreError,
    DuplicateAssetError,
    ExportParseError,
    NotifierError,
    ResolutionError,
    StepError,
)
from services.failure_policy import FailurePolicy
from services.models import (
    AssetStore,
    FileReport,
    FormatFound,
    LogicalOrder,
    Notifier,
    OrderOutcome,
    OrderState,
    PassReport,
    StoredFile,
)
from services.order_grouper import group_rows, parse_export
from services.packager import ZipPackager, derive_password
from services.tracker_store import ProcessedRecord, TrackerStore

logger = logging.getLogger(__name__)

_UNSAFE_NAME_RE = re.compile(r"[\\/\x00]+")


def split_fix_marker(file_name: str, marker: str = "_fix") -> Tuple[str, bool]:
    """Return (base file name, is_fix) for names like ``orders_fix.csv`` / ``orders_fix2.csv``."""
    if not marker:
        return file_name, False
    p = PurePath(file_name)
    m = re.search(rf"{re.escape(marker)}\d*$", p.stem, flags=re.IGNORECASE)
    if not m or m.start() == 0:
        return file_name, False
    return p.stem[: m.start()] + p.suffix, True


def _safe_name(name: str) -> str:
    return _UNSAFE_NAME_RE.sub("_", name).strip() or "file"


class FulfillmentOrchestrator:
    """Turns order-export files into delivered, password-protected archives.

    Per order: resolve -> download -> package -> upload -> notify -> record.
    A failure anywhere leaves the processed tracker untouched for that order,
    so it is picked up again on the next pass.
    """

    def __init__(
        self,
        settings: Settings,
        *,
        store: AssetStore,
        tracker: TrackerStore,
        resolver: AssetResolver,
        notifier: Notifier,
        policy: FailurePolicy,
        packager: Optional[ZipPackager] = None,
        dry_run: bool = False,
        now: Optional[Callable[[], datetime]] = None,
    ):
        self.settings = settings
        self.store = store
        self.tracker = tracker
        self.resolver = resolver
        self.notifier = notifier
        self.policy = policy
        self.packager = packager or ZipPackager()
        self.dry_run = dry_run
        self._now = now or (lambda: datetime.now(timezone.utc))

    # ------------------------------------------------------------------ files

    def list_export_files(self) -> List[StoredFile]:
        files = self.store.list(self.settings.incoming_folder_id, folders_only=False, order_by="createdTime")
        files = [f for f in files if not f.is_folder]
        files.sort(key=lambda f: (f.created_time or datetime.min.replace(tzinfo=timezone.utc), f.name))
        if self.settings.scan_mode == "latest" and files:
            return files[-1:]
        return files

    def _delivered_ids(self, record: ProcessedRecord, file_name: str) -> Set[str]:
        """Order ids delivered under any key sharing this file's base name.

        Covers the base file and every fix file of it (``orders_fix.csv``,
        ``orders_fix2.csv``, ...), so no fix generation resends an order.
        """
        marker = self.settings.fix_marker
        base, _ = split_fix_marker(file_name, marker)
        delivered: Set[str] = set()
        for key, order_ids in record.items():
            if key == file_name or split_fix_marker(key, marker)[0] == base:
                delivered.update(order_ids)
        return delivered

    def _move_to_processed(self, file: StoredFile) -> bool:
        if self.dry_run:
            logger.info("dry-run: would move file=%s to processed", file.name)
            return False
        try:
            self.store.move(file.id, self.settings.processed_folder_id, self.settings.incoming_folder_id)
        except AssetStoreError as e:
            logger.error("failed to move file=%s to processed: %s", file.name, e)
            self.policy.record_error(f"move {file.name}: {e}")
            return False
        logger.info("file=%s moved to processed", file.name)
        return True

    def _record_failure(self, key: str, message: str, *, file_name: str, requires_human: bool) -> None:
        if self.dry_run:
            return
        try:
            self.policy.log_daily_error(key, message, file_name=file_name, requires_human=requires_human)
        except Exception as e:
            logger.error("key=%s failure could not be recorded: %s", key, e)

    def _alert_once(self, key: str, subject: str, message: str) -> None:
        if self.dry_run:
            logger.info("dry-run: would alert %r", subject)
            return
        self.policy.alert_once(key, subject, message)

    def _load_orders(self, file: StoredFile) -> Tuple[Dict[str, LogicalOrder], int]:
        data = self.store.read_bytes(file)
        rows = parse_export(data, file.name, file.mime_type)
        grouping = group_rows(rows)
        return grouping.orders, len(grouping.malformed)

    # ------------------------------------------------------------------ order

    def _download_folder(self, folder: StoredFile, dest_dir: Path, label: str) -> List[Path]:
        files = [f for f in self.resolver.list_files(folder) if not f.is_folder]
        dest_dir.mkdir(parents=True, exist_ok=True)
        out: List[Path] = []
        for f in files:
            dest = dest_dir / _safe_name(f.name)
            if dest.exists():
                raise DuplicateAssetError(f"{label}: two source files map to {dest.name!r} in one archive")
            self.store.download(f, dest)
            out.append(dest)
        return out

    def process_order(self, order: LogicalOrder, *, tracking_key: str) -> OrderOutcome:
        state = OrderState.PENDING
        resolver = self.resolver.for_order()
        logger.info("order_id=%s file=%s items=%d start", order.order_id, tracking_key, len(order.items))
        try:
            scratch_root = self.settings.scratch_dir or None
            if scratch_root:
                Path(scratch_root).mkdir(parents=True, exist_ok=True)
            with tempfile.TemporaryDirectory(
                prefix=f"order_{_safe_name(order.order_id)}_", dir=scratch_root, ignore_cleanup_errors=True
            ) as tmp:
                workspace = Path(tmp)
                assets_dir = workspace / "assets"
                assets_dir.mkdir()

                state = OrderState.RESOLVING
                targets: List[Tuple[str, FormatFound]] = []
                for item in order.items:
                    product_name = normalize_product_name(item.product_name)
                    product = resolver.resolve_product(product_name)
                    if product is None:
                        raise ResolutionError("Product", product_name, attempted=resolver.collections)
                    found = resolver.resolve_format(product, item.size)
                    if not isinstance(found, FormatFound):
                        raise ResolutionError("Format", product_name, attempted=list(found.attempted))
                    logger.info(
                        "order_id=%s product=%r format=%s folder=%s",
                        order.order_id,
                        product_name,
                        found.variant,
                        found.folder.id,
                    )
                    targets.append((product_name, found))
                thank_you = resolver.resolve_thank_you()

                if self.dry_run:
                    logger.info(
                        "dry-run: order_id=%s would deliver %s to %s",
                        order.order_id,
                        ", ".join(f"{p}/{f.variant}" for p, f in targets),
                        mask_email(order.buyer_email),
                    )
                    return OrderOutcome(order.order_id, OrderState.PENDING, reason="dry-run")

                state = OrderState.DOWNLOADING
                # a product bought in several formats gets one subfolder per format
                formats: Dict[str, Set[str]] = {}
                for product_name, found in targets:
                    formats.setdefault(product_name, set()).add(found.folder.id)
                seen_folders: Set[str] = set()
                for product_name, found in targets:
                    if found.folder.id in seen_folders:
                        continue
                    seen_folders.add(found.folder.id)
                    label = f"{product_name}/{found.variant}"
                    dest_dir = assets_dir / _safe_name(product_name)
                    if len(formats[product_name]) > 1:
                        dest_dir = dest_dir / _safe_name(found.variant)
                    got = self._download_folder(found.folder, dest_dir, label)
                    if not got:
                        raise ResolutionError("Asset files", label)
                if not self._download_folder(thank_you, assets_dir, "thank-you card"):
                    raise ResolutionError("Thank-you files", thank_you.name)

                state = OrderState.PACKAGING
                password = derive_password(
                    order.order_id, order.buyer_email, self.settings.password_email_suffix_len
                )
                archive = self.packager.pack(
                    assets_dir, workspace / f"Order_{_safe_name(order.order_id)}.zip", password
                )

                state = OrderState.UPLOADING
                deliverable_id = self.store.upload(
                    self.settings.deliverables_folder_id, archive.name, archive, "application/zip"
                )
                if not deliverable_id:
                    raise AssetStoreError("upload returned no file id")

                state = OrderState.NOTIFYING
                if not order.buyer_email:
                    raise NotifierError("buyer email is missing")
                subject, html = delivery_email(
                    order.buyer_name,
                    download_link(deliverable_id),
                    password,
                    ttl_hours=self.settings.deliverable_ttl_hours,
                    contact_email=self.settings.contact_email,
                )
                self.notifier.send(order.buyer_email, subject, html, to_name=order.buyer_name)

                state = OrderState.RECORDED
                self.tracker.record_success(tracking_key, order.order_id)
        except Exception as e:
            err = StepError(state.value, f"{type(e).__name__}: {e}", requires_human=getattr(e, "requires_human", False))
            logger.error("order_id=%s failed step=%s reason=%s", order.order_id, err.step, err.reason)
            self._record_failure(order.order_id, str(err), file_name=tracking_key, requires_human=err.requires_human)
            return OrderOutcome(order.order_id, OrderState.FAILED, reason=str(err), requires_human=err.requires_human)

        try:
            self.policy.clear_succeeded(order.order_id)
        except Exception as e:
            logger.warning("order_id=%s could not be cleared from failed record: %s", order.order_id, e)
        logger.info("order_id=%s delivered deliverable=%s", order.order_id, deliverable_id)
        return OrderOutcome(order.order_id, OrderState.RECORDED, deliverable_id=deliverable_id)

    # ------------------------------------------------------------------ pass

    def _run_orders(self, orders: List[LogicalOrder], tracking_key: str) -> List[OrderOutcome]:
        workers = max(1, self.settings.order_workers)
        if workers == 1 or len(orders) <= 1:
            return [self.process_order(o, tracking_key=tracking_key) for o in orders]
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="order") as pool:
            return list(pool.map(lambda o: self.process_order(o, tracking_key=tracking_key), orders))

    def process_file(self, file: StoredFile) -> FileReport:
        base, is_fix = split_fix_marker(file.name, self.settings.fix_marker)
        report = FileReport(file_name=file.name, tracking_key=file.name)
        logger.info("processing file=%s fix=%s", file.name, is_fix)

        try:
            orders, malformed = self._load_orders(file)
        except (ExportParseError, AssetStoreError) as e:
            report.error = f"File processing error: {e}"
            logger.error("file=%s %s", file.name, report.error)
            self._record_failure(
                file.name, report.error, file_name=file.name, requires_human=isinstance(e, ExportParseError)
            )
            return report

        report.malformed_rows = malformed
        if malformed:
            self._alert_once(
                f"malformed:{file.name}",
                f"Malformed rows in {file.name}",
                f"{malformed} row(s) in {file.name} have no order id or product name and were skipped.",
            )

        delivered = self._delivered_ids(self.tracker.load(), file.name)
        pending = [o for oid, o in orders.items() if oid not in delivered]
        report.skipped = [oid for oid in orders if oid in delivered]
        for oid in report.skipped:
            logger.info("order_id=%s already delivered for file=%s; skipping", oid, file.name)

        if not pending:
            if orders and not is_fix:
                logger.warning("file=%s was already fully processed; not reprocessing", file.name)
                self._alert_once(
                    f"duplicate:{file.name}",
                    f"Export file already processed: {file.name}",
                    f"Every order in {file.name} has already been delivered, so nothing was sent again.\n"
                    f"To resend orders, upload a corrected export named like "
                    f"{PurePath(base).stem}{self.settings.fix_marker}{PurePath(base).suffix}.",
                )
            report.moved = self._move_to_processed(file)
            return report

        failed_record = self.tracker.load_failed()
        eligible: List[LogicalOrder] = []
        for order in pending:
            if self.policy.is_dead_lettered(order.order_id, failed_record):
                logger.warning("order_id=%s reached the attempt limit; waiting for manual clear", order.order_id)
                report.dead_lettered.append(order.order_id)
                continue
            eligible.append(order)

        for outcome in self._run_orders(eligible, file.name):
            if outcome.ok:
                report.processed.append(outcome.order_id)
            elif outcome.state == OrderState.FAILED:
                report.failed[outcome.order_id] = outcome.reason

        if self.dry_run:
            return report
        if report.failed:
            logger.warning(
                "file=%s kept for retry: %d order(s) failed (%s)",
                file.name,
                len(report.failed),
                ", ".join(report.failed),
            )
            return report
        report.moved = self._move_to_processed(file)
        return report

    def process_all_orders(self) -> PassReport:
        """One scan over the incoming folder. Only setup failures propagate."""
        report = PassReport()
        files = self.list_export_files()
        if not files:
            logger.info("no export files in incoming folder")
            return report
        for file in files:
            try:
                report.files.append(self.process_file(file))
            except AssetStoreError as e:
                logger.error("file=%s aborted: %s", file.name, e)
                self.policy.record_error(f"{file.name}: {e}")
                report.files.append(FileReport(file_name=file.name, tracking_key=file.name, error=str(e)))
        logger.info(
            "pass complete files=%d delivered=%d failed=%d",
            len(report.files),
            report.processed_count,
            report.failed_count,
        )
        return report

    # ------------------------------------------------------------------ housekeeping

    def sweep_processed_files(self) -> List[str]:
        """Move incoming files whose every order is already delivered."""
        moved: List[str] = []
        record = self.tracker.load()
        for file in self.list_export_files():
            try:
                orders, _ = self._load_orders(file)
            except (ExportParseError, AssetStoreError) as e:
                logger.warning("sweep: cannot read file=%s: %s", file.name, e)
                continue
            if not orders:
                continue
            delivered = self._delivered_ids(record, file.name)
            if all(oid in delivered for oid in orders):
                if self._move_to_processed(file):
                    moved.append(file.name)
            else:
                logger.info("sweep: file=%s not fully processed yet", file.name)
        return moved

    def cleanup_stale_deliverables(self) -> List[str]:
        """Delete uploaded archives older than the download window."""
        threshold = self._now() - timedelta(hours=self.settings.deliverable_ttl_hours)
        deleted: List[str] = []
        for f in self.store.list(self.settings.deliverables_folder_id, folders_only=False):
            if f.created_time is None or f.created_time >= threshold:
                continue
            if self.dry_run:
                logger.info("dry-run: would delete deliverable=%s", f.name)
                continue
            try:
                self.store.delete(f.id)
            except AssetStoreError as e:
                logger.error("failed to delete deliverable=%s: %s", f.name, e)
                continue
            logger.info("deleted stale deliverable=%s created=%s", f.name, f.created_time.isoformat())
            deleted.append(f.id)
        return deleted

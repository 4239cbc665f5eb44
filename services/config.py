from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import List

from dotenv import load_dotenv

ROOT = Path(__file__).resolve().parents[1]


def _env(name: str, default: str = "") -> str:
    return (os.getenv(name) or default).strip()


def _to_bool(raw: str, default: bool = False) -> bool:
    s = (raw or "").strip().lower()
    if not s:
        return default
    return s in {"1", "true", "yes", "y", "on"}


def _to_int(raw: str, default: int, minimum: int = 0) -> int:
    try:
        val = int((raw or "").strip())
        if val >= minimum:
            return val
    except Exception:
        pass
    return default


def _to_float(raw: str, default: float) -> float:
    try:
        val = float((raw or "").strip())
        if val >= 0:
            return val
    except Exception:
        pass
    return default


def _to_list(raw: str, default: List[str]) -> List[str]:
    out = [x.strip() for x in (raw or "").split(",") if x.strip()]
    return out or list(default)


@dataclass
class Settings:
    # Google Drive
    gdrive_credentials_file: str = "credentials.json"
    incoming_folder_id: str = ""
    processed_folder_id: str = ""
    deliverables_folder_id: str = ""
    assets_root_folder_id: str = ""
    thank_you_folder_id: str = ""
    thank_you_folder_name: str = "Thank You Card"
    store_num_retries: int = 3
    store_timeout_sec: int = 60

    # Asset lookup
    collection_folders: List[str] = field(default_factory=lambda: ["Digital Art", "Bonus Collection"])
    product_format_variants: List[str] = field(default_factory=lambda: ["A2", "40x40"])
    match_order_size: bool = False

    # Order processing
    scan_mode: str = "all"
    fix_marker: str = "_fix"
    password_email_suffix_len: int = 4
    max_order_attempts: int = 0
    order_workers: int = 1
    deliverable_ttl_hours: int = 24
    scratch_dir: str = ""

    # Tracker
    tracker_backend: str = "drive"
    tracker_folder_id: str = ""
    tracker_local_dir: str = str(ROOT / "state")
    tracker_file_name: str = "processed_tracker.json"
    failed_file_name: str = "failed_orders_tracker.json"

    # Mail
    mail_backend: str = "smtp"
    smtp_host: str = ""
    smtp_port: int = 587
    smtp_user: str = ""
    smtp_pass: str = ""
    smtp_from: str = ""
    smtp_ssl: bool = False
    brevo_api_key: str = ""
    brevo_api_url: str = "https://api.brevo.com/v3/smtp/email"
    sender_email: str = ""
    sender_name: str = "narrARTive"
    contact_email: str = ""
    admin_email: str = ""
    mail_max_attempts: int = 3
    mail_retry_delay_sec: float = 1.0

    # Scheduling
    order_scan_interval_sec: int = 300
    cleanup_interval_sec: int = 3600
    daily_reset_tz: str = "Europe/Berlin"
    lock_file: str = str(ROOT / ".orchestrator.lock")
    status_port: int = 3000
    log_level: str = "INFO"

    @classmethod
    def from_env(cls, env_file: Path | None = None) -> "Settings":
        load_dotenv(env_file or (ROOT / ".env"))
        smtp_user = _env("SMTP_USER")
        return cls(
            gdrive_credentials_file=_env("GDRIVE_CREDENTIALS_FILE", "credentials.json"),
            incoming_folder_id=_env("INCOMING_FOLDER_ID"),
            processed_folder_id=_env("PROCESSED_FOLDER_ID"),
            deliverables_folder_id=_env("DELIVERABLES_FOLDER_ID"),
            assets_root_folder_id=_env("ASSETS_ROOT_FOLDER_ID"),
            thank_you_folder_id=_env("THANK_YOU_FOLDER_ID"),
            thank_you_folder_name=_env("THANK_YOU_FOLDER_NAME", "Thank You Card"),
            store_num_retries=_to_int(_env("STORE_NUM_RETRIES"), 3),
            store_timeout_sec=_to_int(_env("STORE_TIMEOUT_SEC"), 60, minimum=1),
            collection_folders=_to_list(_env("COLLECTION_FOLDERS"), ["Digital Art", "Bonus Collection"]),
            product_format_variants=_to_list(_env("PRODUCT_FORMAT_VARIANTS"), ["A2", "40x40"]),
            match_order_size=_to_bool(_env("MATCH_ORDER_SIZE"), False),
            scan_mode=_env("SCAN_MODE", "all").lower(),
            fix_marker=_env("FIX_MARKER", "_fix"),
            password_email_suffix_len=_to_int(_env("PASSWORD_EMAIL_SUFFIX_LEN"), 4, minimum=1),
            max_order_attempts=_to_int(_env("MAX_ORDER_ATTEMPTS"), 0),
            order_workers=_to_int(_env("ORDER_WORKERS"), 1, minimum=1),
            deliverable_ttl_hours=_to_int(_env("DELIVERABLE_TTL_HOURS"), 24, minimum=1),
            scratch_dir=_env("SCRATCH_DIR"),
            tracker_backend=_env("TRACKER_BACKEND", "drive").lower(),
            tracker_folder_id=_env("TRACKER_FOLDER_ID"),
            tracker_local_dir=_env("TRACKER_LOCAL_DIR", str(ROOT / "state")),
            mail_backend=_env("MAIL_BACKEND", "smtp").lower(),
            smtp_host=_env("SMTP_HOST"),
            smtp_port=_to_int(_env("SMTP_PORT"), 587, minimum=1),
            smtp_user=smtp_user,
            smtp_pass=_env("SMTP_PASS"),
            smtp_from=_env("SMTP_FROM") or smtp_user,
            smtp_ssl=_to_bool(_env("SMTP_SSL"), False),
            brevo_api_key=_env("BREVO_API_KEY"),
            brevo_api_url=_env("BREVO_API_URL", "https://api.brevo.com/v3/smtp/email"),
            sender_email=_env("SENDER_EMAIL") or _env("SMTP_FROM") or smtp_user,
            sender_name=_env("SENDER_NAME", "narrARTive"),
            contact_email=_env("CONTACT_EMAIL"),
            admin_email=_env("ADMIN_EMAIL"),
            mail_max_attempts=_to_int(_env("MAIL_MAX_ATTEMPTS"), 3, minimum=1),
            mail_retry_delay_sec=_to_float(_env("MAIL_RETRY_DELAY_SEC"), 1.0),
            order_scan_interval_sec=_to_int(_env("ORDER_SCAN_INTERVAL_SEC"), 300, minimum=1),
            cleanup_interval_sec=_to_int(_env("CLEANUP_INTERVAL_SEC"), 3600, minimum=1),
            daily_reset_tz=_env("DAILY_RESET_TZ", "Europe/Berlin"),
            lock_file=_env("ORCH_LOCK_FILE", str(ROOT / ".orchestrator.lock")),
            status_port=_to_int(_env("STATUS_PORT"), 3000, minimum=1),
            log_level=_env("LOG_LEVEL", "INFO").upper(),
        )

    def validate(self) -> List[str]:
        """Return the names of required settings that are missing."""
        required = {
            "INCOMING_FOLDER_ID": self.incoming_folder_id,
            "PROCESSED_FOLDER_ID": self.processed_folder_id,
            "DELIVERABLES_FOLDER_ID": self.deliverables_folder_id,
            "ASSETS_ROOT_FOLDER_ID": self.assets_root_folder_id,
            "THANK_YOU_FOLDER_ID": self.thank_you_folder_id,
        }
        if self.tracker_backend == "drive":
            required["TRACKER_FOLDER_ID"] = self.tracker_folder_id
        if self.mail_backend == "brevo":
            required["BREVO_API_KEY"] = self.brevo_api_key
            required["SENDER_EMAIL"] = self.sender_email
        else:
            required["SMTP_HOST"] = self.smtp_host
            required["SMTP_USER"] = self.smtp_user
            required["SMTP_PASS"] = self.smtp_pass
        missing = [name for name, value in required.items() if not value]
        if self.scan_mode not in {"all", "latest"}:
            missing.append("SCAN_MODE (expected all|latest)")
        if self.tracker_backend not in {"drive", "local"}:
            missing.append("TRACKER_BACKEND (expected drive|local)")
        return missing

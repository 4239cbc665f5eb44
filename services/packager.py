from __future__ import annotations

import logging
import shutil
import subprocess
from pathlib import Path

from services.errors import PackagingError

logger = logging.getLogger(__name__)


def derive_password(order_id: str, buyer_email: str, suffix_len: int = 4) -> str:
    """Order id followed by the tail of the buyer email.

    Deterministic, so a retried order gets the same password without it being
    stored anywhere.
    """
    email = (buyer_email or "").strip() or "x" * suffix_len
    return f"{str(order_id).strip()}{email[-suffix_len:]}"


class ZipPackager:
    """Builds a single-password encrypted zip with the ``zip`` command line tool."""

    def __init__(self, zip_binary: str = "zip", timeout_sec: int = 300):
        self.zip_binary = zip_binary
        self.timeout_sec = timeout_sec

    def pack(self, source_dir: Path, out_path: Path, password: str) -> Path:
        if not password:
            raise PackagingError("refusing to build an archive without a password")
        files = [p for p in source_dir.rglob("*") if p.is_file() and not p.name.startswith(".")]
        if not files:
            raise PackagingError(f"nothing to package in {source_dir}")

        binary = shutil.which(self.zip_binary)
        if binary is None:
            raise PackagingError(f"zip binary not found: {self.zip_binary!r}")

        out_path = out_path.resolve()
        out_path.parent.mkdir(parents=True, exist_ok=True)
        out_path.unlink(missing_ok=True)

        cmd = [binary, "-r", "-q", "-P", password, str(out_path), ".", "-x", ".*", "*/.*"]
        try:
            p = subprocess.run(
                cmd,
                cwd=str(source_dir),
                capture_output=True,
                text=True,
                timeout=self.timeout_sec,
            )
        except subprocess.TimeoutExpired as e:
            raise PackagingError(f"zip timed out after {self.timeout_sec}s") from e
        if p.returncode != 0:
            # zip takes the password on its command line; keep it out of errors
            output = (p.stderr or p.stdout or "").replace(password, "***")
            last = output.strip().splitlines()
            raise PackagingError(f"zip failed rc={p.returncode}: {last[-1] if last else 'no output'}")
        if not out_path.exists() or out_path.stat().st_size <= 0:
            raise PackagingError(f"zip produced no archive at {out_path}")

        logger.info("archive built path=%s files=%d bytes=%d", out_path.name, len(files), out_path.stat().st_size)
        return out_path

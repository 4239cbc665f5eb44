from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, List, Optional, Protocol, Sequence, Union


FOLDER_MIME = "application/vnd.google-apps.folder"
SPREADSHEET_MIME = "application/vnd.google-apps.spreadsheet"


@dataclass(frozen=True)
class StoredFile:
    id: str
    name: str
    created_time: Optional[datetime] = None
    is_folder: bool = False
    mime_type: str = ""


@dataclass(frozen=True)
class OrderLineItem:
    order_id: str
    product_name: str
    size: str = ""
    buyer_email: str = ""
    buyer_name: str = ""
    row_number: int = 0


@dataclass
class LogicalOrder:
    order_id: str
    items: List[OrderLineItem] = field(default_factory=list)

    @property
    def buyer_email(self) -> str:
        return self.items[0].buyer_email if self.items else ""

    @property
    def buyer_name(self) -> str:
        return self.items[0].buyer_name if self.items else ""


class OrderState(str, Enum):
    PENDING = "pending"
    RESOLVING = "resolving"
    DOWNLOADING = "downloading"
    PACKAGING = "packaging"
    UPLOADING = "uploading"
    NOTIFYING = "notifying"
    RECORDED = "recorded"
    FAILED = "failed"


@dataclass(frozen=True)
class FormatFound:
    folder: StoredFile
    variant: str


@dataclass(frozen=True)
class FormatNotFound:
    product: str
    attempted: tuple


FormatResolution = Union[FormatFound, FormatNotFound]


@dataclass
class OrderOutcome:
    order_id: str
    state: OrderState
    reason: str = ""
    requires_human: bool = False
    deliverable_id: str = ""

    @property
    def ok(self) -> bool:
        return self.state == OrderState.RECORDED


@dataclass
class FileReport:
    file_name: str
    tracking_key: str
    processed: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    dead_lettered: List[str] = field(default_factory=list)
    failed: Dict[str, str] = field(default_factory=dict)
    malformed_rows: int = 0
    moved: bool = False
    error: str = ""


@dataclass
class PassReport:
    files: List[FileReport] = field(default_factory=list)

    @property
    def processed_count(self) -> int:
        return sum(len(f.processed) for f in self.files)

    @property
    def failed_count(self) -> int:
        return sum(len(f.failed) for f in self.files)


class AssetStore(Protocol):
    def list(
        self,
        parent_id: str,
        *,
        folders_only: Optional[bool] = None,
        name: Optional[str] = None,
        order_by: Optional[str] = None,
    ) -> List[StoredFile]: ...

    def download(self, file: StoredFile, dest: Path) -> Path: ...

    def read_bytes(self, file: StoredFile) -> bytes: ...

    def upload(self, parent_id: str, name: str, local_file: Path, mimetype: str = ...) -> str: ...

    def write_bytes(self, parent_id: str, name: str, data: bytes, mimetype: str = ...) -> str: ...

    def move(self, file_id: str, add_parent: str, remove_parent: str) -> None: ...

    def delete(self, file_id: str) -> None: ...


class Notifier(Protocol):
    def send(
        self,
        to: str,
        subject: str,
        html: str,
        *,
        to_name: str = "",
        attachments: Optional[Sequence[Path]] = None,
    ) -> None: ...

from __future__ import annotations

import functools
import io
import logging
import socket
import threading
from datetime import datetime
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

import httplib2
from google.oauth2 import service_account
from google_auth_httplib2 import AuthorizedHttp
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaFileUpload, MediaIoBaseDownload, MediaIoBaseUpload

from services.errors import AssetNotFoundError, AssetStoreError
from services.models import FOLDER_MIME, SPREADSHEET_MIME, StoredFile

SCOPES = ["https://www.googleapis.com/auth/drive"]
FILE_FIELDS = "id,name,mimeType,createdTime"
TRANSIENT_STATUSES = {408, 429, 500, 502, 503, 504}

logger = logging.getLogger(__name__)


def _load_credentials(credentials_file: Path):
    return service_account.Credentials.from_service_account_file(str(credentials_file), scopes=SCOPES)


def _build_service(creds, timeout_sec: int):
    # httplib2.Http is not thread-safe; every thread needs its own
    http = AuthorizedHttp(creds, http=httplib2.Http(timeout=timeout_sec))
    return build("drive", "v3", http=http, cache_discovery=False)


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def _parse_time(raw: Any) -> Optional[datetime]:
    s = str(raw or "").strip()
    if not s:
        return None
    try:
        return datetime.fromisoformat(s.replace("Z", "+00:00"))
    except ValueError:
        return None


def _to_stored_file(item: Dict[str, Any]) -> StoredFile:
    mime = str(item.get("mimeType") or "")
    return StoredFile(
        id=str(item.get("id") or ""),
        name=str(item.get("name") or ""),
        created_time=_parse_time(item.get("createdTime")),
        is_folder=mime == FOLDER_MIME,
        mime_type=mime,
    )


def _http_status(err: HttpError) -> int:
    status = getattr(err, "status_code", None)
    if status is None:
        try:
            status = int(err.resp.status)
        except Exception:
            status = 0
    return int(status or 0)


class DriveAssetStore:
    """Google Drive backed asset store.

    Every request is executed with ``num_retries`` so googleapiclient retries
    429/5xx and socket errors with exponential backoff. A 404 is translated into
    ``AssetNotFoundError`` and never retried.

    The API client is built lazily once per thread, so parallel order workers
    never share an HTTP connection. A ``service`` passed in is used as-is by
    every thread.
    """

    def __init__(
        self,
        credentials_file: Path | str | None = None,
        *,
        num_retries: int = 3,
        timeout_sec: int = 60,
        service: Any = None,
        service_factory: Optional[Callable[[], Any]] = None,
    ):
        self.num_retries = num_retries
        if service is None and service_factory is None:
            if not credentials_file:
                raise AssetStoreError("GDRIVE_CREDENTIALS_FILE is not set")
            creds = _load_credentials(Path(credentials_file))
            service_factory = functools.partial(_build_service, creds, timeout_sec)
        self._shared_service = service
        self._service_factory = service_factory
        self._local = threading.local()

    @property
    def _service(self):
        if self._shared_service is not None:
            return self._shared_service
        svc = getattr(self._local, "service", None)
        if svc is None:
            svc = self._service_factory()
            self._local.service = svc
            logger.debug("drive client built thread=%s", threading.current_thread().name)
        return svc

    def _execute(self, request, what: str) -> Dict[str, Any]:
        try:
            return request.execute(num_retries=self.num_retries) or {}
        except HttpError as e:
            status = _http_status(e)
            if status == 404:
                raise AssetNotFoundError(f"{what}: not found") from e
            raise AssetStoreError(f"{what}: HTTP {status}", transient=status in TRANSIENT_STATUSES) from e
        except (socket.timeout, TimeoutError, ConnectionError, httplib2.HttpLib2Error) as e:
            raise AssetStoreError(f"{what}: {type(e).__name__}: {e}", transient=True) from e

    def list(
        self,
        parent_id: str,
        *,
        folders_only: Optional[bool] = None,
        name: Optional[str] = None,
        order_by: Optional[str] = None,
    ) -> List[StoredFile]:
        q = f"trashed = false and '{_quote(parent_id)}' in parents"
        if folders_only is True:
            q += f" and mimeType = '{FOLDER_MIME}'"
        elif folders_only is False:
            q += f" and mimeType != '{FOLDER_MIME}'"
        if name is not None:
            q += f" and name = '{_quote(name)}'"

        out: List[StoredFile] = []
        page_token: Optional[str] = None
        while True:
            params: Dict[str, Any] = {
                "q": q,
                "fields": f"nextPageToken, files({FILE_FIELDS})",
                "pageSize": 1000,
                "supportsAllDrives": True,
                "includeItemsFromAllDrives": True,
            }
            if order_by:
                params["orderBy"] = order_by
            if page_token:
                params["pageToken"] = page_token
            resp = self._execute(self._service.files().list(**params), f"list parent={parent_id}")
            out.extend(_to_stored_file(item) for item in resp.get("files") or [])
            page_token = resp.get("nextPageToken")
            if not page_token:
                break
        return out

    def download(self, file: StoredFile, dest: Path) -> Path:
        files = self._service.files()
        if file.mime_type == SPREADSHEET_MIME:
            request = files.export_media(fileId=file.id, mimeType="text/csv")
        else:
            request = files.get_media(fileId=file.id, supportsAllDrives=True)

        dest.parent.mkdir(parents=True, exist_ok=True)
        try:
            with dest.open("wb") as fh:
                downloader = MediaIoBaseDownload(fh, request)
                done = False
                while not done:
                    _, done = downloader.next_chunk(num_retries=self.num_retries)
        except HttpError as e:
            dest.unlink(missing_ok=True)
            status = _http_status(e)
            if status == 404:
                raise AssetNotFoundError(f"download {file.name!r}: not found") from e
            raise AssetStoreError(
                f"download {file.name!r}: HTTP {status}", transient=status in TRANSIENT_STATUSES
            ) from e
        except (socket.timeout, TimeoutError, ConnectionError, httplib2.HttpLib2Error) as e:
            dest.unlink(missing_ok=True)
            raise AssetStoreError(f"download {file.name!r}: {type(e).__name__}: {e}", transient=True) from e
        return dest

    def read_bytes(self, file: StoredFile) -> bytes:
        files = self._service.files()
        if file.mime_type == SPREADSHEET_MIME:
            request = files.export_media(fileId=file.id, mimeType="text/csv")
        else:
            request = files.get_media(fileId=file.id, supportsAllDrives=True)
        buf = io.BytesIO()
        try:
            downloader = MediaIoBaseDownload(buf, request)
            done = False
            while not done:
                _, done = downloader.next_chunk(num_retries=self.num_retries)
        except HttpError as e:
            status = _http_status(e)
            if status == 404:
                raise AssetNotFoundError(f"read {file.name!r}: not found") from e
            raise AssetStoreError(f"read {file.name!r}: HTTP {status}", transient=status in TRANSIENT_STATUSES) from e
        except (socket.timeout, TimeoutError, ConnectionError, httplib2.HttpLib2Error) as e:
            raise AssetStoreError(f"read {file.name!r}: {type(e).__name__}: {e}", transient=True) from e
        return buf.getvalue()

    def upload(self, parent_id: str, name: str, local_file: Path, mimetype: str = "application/octet-stream") -> str:
        if not local_file.exists() or local_file.stat().st_size <= 0:
            raise AssetStoreError(f"Local file does not exist or is empty: {local_file}")
        media = MediaFileUpload(str(local_file), mimetype=mimetype, resumable=False)
        created = self._execute(
            self._service.files().create(
                body={"name": name, "parents": [parent_id]},
                media_body=media,
                fields="id,name,size",
                supportsAllDrives=True,
            ),
            f"upload {name!r}",
        )
        created_id = str(created.get("id") or "")
        if not created_id:
            raise AssetStoreError("Google Drive upload failed: empty file id")
        return created_id

    def write_bytes(self, parent_id: str, name: str, data: bytes, mimetype: str = "application/json") -> str:
        """Create ``name`` under ``parent_id`` or replace its content when it exists."""
        media = MediaIoBaseUpload(io.BytesIO(data), mimetype=mimetype, resumable=False)
        existing = self.list(parent_id, folders_only=False, name=name)
        if existing:
            file_id = existing[0].id
            updated = self._execute(
                self._service.files().update(
                    fileId=file_id,
                    media_body=media,
                    body={"name": name},
                    fields="id,name,size",
                    supportsAllDrives=True,
                ),
                f"update {name!r}",
            )
            return str(updated.get("id") or file_id)

        created = self._execute(
            self._service.files().create(
                body={"name": name, "parents": [parent_id]},
                media_body=media,
                fields="id,name,size",
                supportsAllDrives=True,
            ),
            f"create {name!r}",
        )
        created_id = str(created.get("id") or "")
        if not created_id:
            raise AssetStoreError("Google Drive upload failed: empty file id")
        return created_id

    def move(self, file_id: str, add_parent: str, remove_parent: str) -> None:
        self._execute(
            self._service.files().update(
                fileId=file_id,
                addParents=add_parent,
                removeParents=remove_parent,
                fields="id,parents",
                supportsAllDrives=True,
            ),
            f"move file={file_id}",
        )
        logger.info("moved file_id=%s to parent=%s", file_id, add_parent)

    def delete(self, file_id: str) -> None:
        self._execute(
            self._service.files().delete(fileId=file_id, supportsAllDrives=True),
            f"delete file={file_id}",
        )

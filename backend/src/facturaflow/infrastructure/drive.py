"""
Backup document storage in Google Drive.

The backup tier keeps a human-browsable copy of every artifact in a folder
tree (week / project / issuer). It is best-effort: callers catch every error
raised here.

Authentication uses a service account. When an impersonation subject is
configured, domain-wide delegation makes files count against that user's
quota instead of the service account's (which is zero).
"""

import io
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable

from fastapi.concurrency import run_in_threadpool
from google.oauth2 import service_account
from googleapiclient.discovery import build
from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseUpload

from facturaflow.config import Settings
from facturaflow.domain.errors import SecondaryStorageError

logger = logging.getLogger(__name__)

DRIVE_SCOPES = ["https://www.googleapis.com/auth/drive"]
FOLDER_MIME_TYPE = "application/vnd.google-apps.folder"
TOKEN_URI = "https://oauth2.googleapis.com/token"


@dataclass
class UploadedDocument:
    file_id: str
    web_view_link: str


class DocumentStore(ABC):
    """Folder-based document store used as the backup tier."""

    name: str = "documents"
    root_folder_id: str

    @abstractmethod
    async def find_folder(self, name: str, parent_id: str) -> str | None:
        """Return the id of the folder called `name` directly under `parent_id`."""
        pass

    @abstractmethod
    async def create_folder(self, name: str, parent_id: str) -> str:
        """Create a folder and return its id."""
        pass

    @abstractmethod
    async def upload_file(
        self,
        folder_id: str,
        file_name: str,
        content: bytes,
        content_type: str,
    ) -> UploadedDocument:
        pass

    @abstractmethod
    async def grant_public_read(self, file_id: str) -> None:
        """Make a file readable by anyone holding the link."""
        pass

    @abstractmethod
    async def check(self) -> bool:
        """Return True if the root folder is reachable."""
        pass


def _escape_query_value(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


class GoogleDriveStore(DocumentStore):
    """
    Google Drive v3 implementation.

    The API client is not thread-safe, so each threadpool worker builds
    its own service object from the shared factory.
    """

    name = "google_drive"

    def __init__(self, service_factory: Callable[[], Any], root_folder_id: str) -> None:
        if not root_folder_id:
            raise ValueError("Google Drive root folder id is required")
        self._service_factory = service_factory
        self._local = threading.local()
        self.root_folder_id = root_folder_id

    @classmethod
    def from_settings(cls, settings: Settings) -> "GoogleDriveStore":
        """Build a store from service-account settings."""
        if not settings.google_service_account_email or not settings.google_private_key:
            raise ValueError("Missing Google Drive service account credentials")

        info = {
            "type": "service_account",
            "client_email": settings.google_service_account_email,
            "private_key": settings.google_private_key.replace("\\n", "\n"),
            "token_uri": TOKEN_URI,
        }
        credentials = service_account.Credentials.from_service_account_info(
            info, scopes=DRIVE_SCOPES
        )
        if settings.google_impersonate_email:
            logger.info(f"Using domain-wide delegation as {settings.google_impersonate_email}")
            credentials = credentials.with_subject(settings.google_impersonate_email)

        def factory() -> Any:
            return build("drive", "v3", credentials=credentials, cache_discovery=False)

        return cls(factory, settings.google_drive_root_folder_id or "")

    def _service(self) -> Any:
        service = getattr(self._local, "service", None)
        if service is None:
            service = self._service_factory()
            self._local.service = service
        return service

    async def _execute(self, operation: str, make_request: Callable[[Any], Any]) -> dict:
        def call() -> dict:
            return make_request(self._service()).execute()

        try:
            return await run_in_threadpool(call)
        except HttpError as e:
            raise SecondaryStorageError(f"Drive {operation} failed: {e}") from e

    async def find_folder(self, name: str, parent_id: str) -> str | None:
        query = (
            f"mimeType='{FOLDER_MIME_TYPE}' and name='{_escape_query_value(name)}' "
            f"and '{parent_id}' in parents and trashed=false"
        )
        response = await self._execute(
            "folder search",
            lambda drive: drive.files().list(
                q=query,
                fields="files(id,name)",
                pageSize=1,
                supportsAllDrives=True,
                includeItemsFromAllDrives=True,
            ),
        )
        files = response.get("files") or []
        return files[0]["id"] if files else None

    async def create_folder(self, name: str, parent_id: str) -> str:
        response = await self._execute(
            "folder create",
            lambda drive: drive.files().create(
                body={"name": name, "mimeType": FOLDER_MIME_TYPE, "parents": [parent_id]},
                fields="id",
                supportsAllDrives=True,
            ),
        )
        if not response.get("id"):
            raise SecondaryStorageError(f"Drive returned no id for folder {name}")
        return response["id"]

    async def upload_file(
        self,
        folder_id: str,
        file_name: str,
        content: bytes,
        content_type: str,
    ) -> UploadedDocument:
        media = MediaIoBaseUpload(io.BytesIO(content), mimetype=content_type, resumable=False)
        response = await self._execute(
            "upload",
            lambda drive: drive.files().create(
                body={"name": file_name, "parents": [folder_id]},
                media_body=media,
                fields="id,webViewLink",
                supportsAllDrives=True,
            ),
        )
        file_id = response.get("id")
        if not file_id:
            raise SecondaryStorageError(f"Drive returned no id for file {file_name}")
        return UploadedDocument(
            file_id=file_id,
            web_view_link=response.get("webViewLink")
            or f"https://drive.google.com/file/d/{file_id}/view",
        )

    async def grant_public_read(self, file_id: str) -> None:
        await self._execute(
            "permission grant",
            lambda drive: drive.permissions().create(
                fileId=file_id,
                body={"role": "reader", "type": "anyone"},
                supportsAllDrives=True,
            ),
        )

    async def check(self) -> bool:
        try:
            response = await self._execute(
                "root lookup",
                lambda drive: drive.files().get(
                    fileId=self.root_folder_id,
                    fields="id,name",
                    supportsAllDrives=True,
                ),
            )
        except SecondaryStorageError as e:
            logger.warning(str(e))
            return False
        return bool(response.get("id"))

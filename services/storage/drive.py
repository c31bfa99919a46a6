"""Google Drive file store: folders, uploads and file relocation.

Every call goes through the shared Drive rate limiter. HttpError is logged
and re-raised; orchestrators decide whether a failure is fatal.
"""
import io
import logging
from typing import Any, Dict, List, Optional

from googleapiclient.errors import HttpError
from googleapiclient.http import MediaIoBaseUpload

from shared.google_client import build_service
from shared.rate_limiter import drive_limiter, RateLimiter

logger = logging.getLogger(__name__)

FOLDER_MIME = "application/vnd.google-apps.folder"
SPREADSHEET_MIME = "application/vnd.google-apps.spreadsheet"


def _quote(value: str) -> str:
    return value.replace("\\", "\\\\").replace("'", "\\'")


def view_link(file_id: str) -> str:
    return f"https://drive.google.com/file/d/{file_id}/view"


class DriveClient:
    """Thin wrapper over the Drive v3 files resource."""

    def __init__(self, service: Any, limiter: RateLimiter = drive_limiter):
        self.service = service
        self.limiter = limiter

    @classmethod
    def from_token(cls, access_token: str) -> "DriveClient":
        return cls(build_service("drive", "v3", access_token))

    def find_file(self, name: str, parent_id: Optional[str] = None, mime_type: Optional[str] = None) -> Optional[str]:
        """Return the id of a non-trashed file with this name under ``parent_id``."""
        query = f"name='{_quote(name)}' and trashed=false"
        if mime_type:
            query = f"mimeType='{mime_type}' and {query}"
        if parent_id:
            query += f" and '{parent_id}' in parents"

        self.limiter.wait_for_slot()
        try:
            response = self.service.files().list(
                q=query,
                spaces="drive",
                fields="files(id, name)",
                pageSize=10,
            ).execute()
        except HttpError as e:
            logger.error(f"Drive search failed for '{name}': {e}")
            raise

        files = response.get("files", [])
        if len(files) > 1:
            logger.warning(f"Found {len(files)} nodes named '{name}' under {parent_id or 'root'}, using the first")
        return files[0]["id"] if files else None

    def ensure_folder(self, name: str, parent_id: Optional[str] = None) -> str:
        """Get or create a folder by name and parent.

        Search-then-create is not atomic: two concurrent callers can both
        create the folder.
        """
        folder_id = self.find_file(name, parent_id, mime_type=FOLDER_MIME)
        if folder_id:
            return folder_id

        body: Dict[str, Any] = {"name": name, "mimeType": FOLDER_MIME}
        if parent_id:
            body["parents"] = [parent_id]

        self.limiter.wait_for_slot()
        try:
            folder = self.service.files().create(body=body, fields="id").execute()
        except HttpError as e:
            logger.error(f"Could not create folder '{name}': {e}")
            raise

        logger.info(f"📁 Created folder '{name}' ({folder['id']})")
        return folder["id"]

    def upload_file(self, data: bytes, name: str, parent_id: str, mime_type: str = "application/pdf") -> Dict[str, str]:
        """Upload bytes into ``parent_id``.

        Returns:
            Dict with ``id`` and ``webViewLink``.
        """
        media = MediaIoBaseUpload(io.BytesIO(data), mimetype=mime_type, resumable=False)
        self.limiter.wait_for_slot()
        try:
            created = self.service.files().create(
                body={"name": name, "parents": [parent_id]},
                media_body=media,
                fields="id, webViewLink",
            ).execute()
        except HttpError as e:
            logger.error(f"Upload of '{name}' failed: {e}")
            raise

        file_id = created["id"]
        logger.info(f"⬆️ Uploaded '{name}' ({file_id})")
        return {"id": file_id, "webViewLink": created.get("webViewLink") or view_link(file_id)}

    def get_parents(self, file_id: str) -> List[str]:
        self.limiter.wait_for_slot()
        metadata = self.service.files().get(fileId=file_id, fields="parents").execute()
        return metadata.get("parents", [])

    def move_file(self, file_id: str, new_parent_id: str) -> bool:
        """Reparent a file: add the new parent, drop every old one."""
        try:
            previous = self.get_parents(file_id)
            if previous == [new_parent_id]:
                return True
            self.limiter.wait_for_slot()
            self.service.files().update(
                fileId=file_id,
                addParents=new_parent_id,
                removeParents=",".join(p for p in previous if p != new_parent_id),
                fields="id, parents",
            ).execute()
        except HttpError as e:
            logger.error(f"Could not move file {file_id} to {new_parent_id}: {e}")
            raise

        logger.info(f"Moved file {file_id} to folder {new_parent_id}")
        return True

    def delete_file(self, file_id: str) -> bool:
        self.limiter.wait_for_slot()
        try:
            self.service.files().delete(fileId=file_id).execute()
        except HttpError as e:
            logger.error(f"Could not delete file {file_id}: {e}")
            raise
        logger.info(f"🗑️ Deleted file {file_id}")
        return True

    def download_file(self, file_id: str) -> bytes:
        self.limiter.wait_for_slot()
        try:
            return self.service.files().get_media(fileId=file_id).execute()
        except HttpError as e:
            logger.error(f"Could not download file {file_id}: {e}")
            raise

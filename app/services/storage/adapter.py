from abc import ABC, abstractmethod
import asyncio
import shutil
from pathlib import Path, PurePosixPath


class StorageAdapter(ABC):
    provider: str = "local"

    @abstractmethod
    async def upload_public(
        self,
        local_path: Path,
        name: str,
        content_type: str,
        folder_id: str | None = None,
    ) -> str:
        """Store ``local_path`` as a publicly readable object and return its URL."""
        pass


class LocalFileSystemAdapter(StorageAdapter):
    """Development storage: copies files under ``base_path`` and serves them from ``base_url``."""

    def __init__(self, base_path: str, base_url: str):
        self.base_path = Path(base_path)
        self.base_url = base_url.rstrip("/")
        self.provider = "local"
        self.base_path.mkdir(parents=True, exist_ok=True)

    def _resolve_safe_path(self, object_key: str) -> Path:
        if "\\" in object_key:
            raise ValueError("Invalid object key")
        key_path = PurePosixPath(object_key)
        if key_path.is_absolute() or ".." in key_path.parts:
            raise ValueError("Invalid object key")
        base = self.base_path.resolve()
        resolved = (base / Path(object_key)).resolve()
        if resolved != base and base not in resolved.parents:
            raise ValueError("Invalid object key")
        return resolved

    async def upload_public(
        self,
        local_path: Path,
        name: str,
        content_type: str,
        folder_id: str | None = None,
    ) -> str:
        object_key = f"{folder_id or 'public'}/{Path(name).name}"
        destination = self._resolve_safe_path(object_key)
        destination.parent.mkdir(parents=True, exist_ok=True)
        await asyncio.to_thread(shutil.copyfile, local_path, destination)
        return f"{self.base_url}/files/{object_key}"


class GoogleDriveAdapter(StorageAdapter):
    def __init__(self, drive_service):
        self.provider = "drive"
        self._files = drive_service.files()
        self._permissions = drive_service.permissions()

    def _upload(self, local_path: Path, name: str, content_type: str, folder_id: str | None) -> str:
        # Lazy import to avoid requiring the dependency unless Drive is used
        from googleapiclient.http import MediaFileUpload

        metadata = {"name": name, "mimeType": content_type}
        if folder_id:
            metadata["parents"] = [folder_id]
        media = MediaFileUpload(str(local_path), mimetype=content_type, resumable=False)
        created = self._files.create(body=metadata, media_body=media, fields="id").execute()
        file_id = created["id"]
        self._permissions.create(fileId=file_id, body={"role": "reader", "type": "anyone"}).execute()
        return file_id

    async def upload_public(
        self,
        local_path: Path,
        name: str,
        content_type: str,
        folder_id: str | None = None,
    ) -> str:
        file_id = await asyncio.to_thread(self._upload, local_path, name, content_type, folder_id)
        return drive_file_url(file_id)


def drive_file_url(file_id: str) -> str:
    return f"https://drive.google.com/uc?id={file_id}"

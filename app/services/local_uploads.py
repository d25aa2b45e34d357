from __future__ import annotations

import logging
import re
import time
from dataclasses import dataclass
from pathlib import Path

from fastapi import UploadFile

logger = logging.getLogger(__name__)

# Magic byte signatures for known binary file types.
# Used to cross-check that uploaded file content matches the claimed extension.
_MAGIC_SIGNATURES: dict[str, list[bytes]] = {
    ".pdf": [b"%PDF"],
    ".png": [b"\x89PNG\r\n\x1a\n"],
    ".jpg": [b"\xff\xd8\xff"],
    ".jpeg": [b"\xff\xd8\xff"],
    ".gif": [b"GIF87a", b"GIF89a"],
    ".webp": [b"RIFF"],
}

# Extensions whose content can execute scripts when rendered in a browser.
_DANGEROUS_EXTENSIONS = {".html", ".htm", ".svg", ".xhtml", ".js", ".mjs", ".xml"}

PHOTO_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".heic"}

_CONTENT_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".heic": "image/heic",
    ".pdf": "application/pdf",
}


@dataclass(frozen=True, slots=True)
class StagedFile:
    path: Path
    original_name: str

    @property
    def content_type(self) -> str:
        return content_type_for(self.path.name)


def content_type_for(filename: str) -> str:
    return _CONTENT_TYPES.get(Path(filename).suffix.lower(), "application/octet-stream")


def _validate_content_type(header_bytes: bytes, ext: str) -> None:
    """Validate that file content matches claimed extension via magic bytes.

    Raises ValueError if the content does not match or the extension is dangerous.
    """
    if ext in _DANGEROUS_EXTENSIONS:
        raise ValueError(
            f"File type '{ext}' is not allowed because it may contain executable content"
        )
    signatures = _MAGIC_SIGNATURES.get(ext)
    if signatures is None:
        return
    if not any(header_bytes.startswith(sig) for sig in signatures):
        raise ValueError(f"File content does not match the expected format for '{ext}'")


def _safe_filename(filename: str | None, fallback: str) -> str:
    if not filename:
        return fallback
    name = Path(filename).name or fallback
    return re.sub(r"[^a-zA-Z0-9_.-]", "_", name)


def staged_name(filename: str | None, fallback: str = "upload.bin") -> str:
    """Timestamp-qualified name so concurrent uploads never share a path."""
    return f"{time.time_ns()}_{_safe_filename(filename, fallback)}"


def _staging_dir(base_dir: Path) -> Path:
    base_dir = base_dir.resolve()
    base_dir.mkdir(parents=True, exist_ok=True)
    return base_dir


async def stage_upload(
    file: UploadFile,
    base_dir: Path,
    allowed_extensions: set[str] | None = None,
    max_size_bytes: int = 0,
) -> StagedFile | None:
    """Copy an inbound upload into the staging area; ``None`` when the part is empty."""
    dest_dir = _staging_dir(base_dir)
    original_name = _safe_filename(file.filename, "upload.bin")
    ext = Path(original_name).suffix.lower()

    if allowed_extensions:
        normalized_allowed = {e if e.startswith(".") else f".{e}" for e in allowed_extensions}
        if ext not in normalized_allowed:
            raise ValueError(
                f"File type not allowed. Allowed extensions: {', '.join(sorted(normalized_allowed))}"
            )

    dest_path = dest_dir / staged_name(original_name)
    bytes_written = 0

    try:
        with dest_path.open("wb") as handle:
            first_chunk = await file.read(1024 * 1024)
            if first_chunk:
                _validate_content_type(first_chunk, ext)
            chunk = first_chunk
            while chunk:
                bytes_written += len(chunk)
                if max_size_bytes and bytes_written > max_size_bytes:
                    raise ValueError(
                        f"File exceeds maximum allowed size of {max_size_bytes // (1024 * 1024)} MB"
                    )
                handle.write(chunk)
                chunk = await file.read(1024 * 1024)
    except ValueError:
        # Clean up partial file on validation/size failure
        dest_path.unlink(missing_ok=True)
        raise
    finally:
        await file.close()

    if bytes_written == 0:
        dest_path.unlink(missing_ok=True)
        return None
    return StagedFile(path=dest_path, original_name=original_name)


def stage_bytes(content: bytes, base_dir: Path, filename: str) -> Path:
    dest_path = _staging_dir(base_dir) / staged_name(filename)
    dest_path.write_bytes(content)
    return dest_path


def discard(path: Path | str | None) -> None:
    if not path:
        return
    try:
        Path(path).unlink(missing_ok=True)
    except OSError as exc:
        logger.warning("Could not remove staged file %s: %s", path, exc)

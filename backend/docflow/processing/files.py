"""
File Validation & Processing
════════════════════════════

Everything the intake stage does to an uploaded file on local disk:

  validate_file            — existence, size ceiling, non-empty, extension allowlist
  extract_metadata         — stat() data, plus pixel dimensions for images
  generate_thumbnail       — ≤300×300 JPEG preview for images (never upscales)
  move_to_final_destination — temp staging path → permanent content path
  cleanup_temp_file        — best-effort unlink

Error policy:
  validate_file never raises; it returns a ValidationResult (ensure_valid()
  raises FileValidationError for callers that want an exception).
  extract_metadata and cleanup_temp_file degrade silently (logged).
  generate_thumbnail and move_to_final_destination propagate errors; the
  intake stage swallows thumbnail errors and lets relocation errors fail the
  attempt so the job framework retries it.

All blocking file-system work runs in the default thread executor.
"""

from __future__ import annotations

import asyncio
import logging
import os
import shutil
import time
import uuid
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

from docflow.core.config import Settings
from docflow.core.exceptions import FileValidationError, ValidationCode
from docflow.schemas.documents import ValidationResult

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Type maps
# ---------------------------------------------------------------------------

_FILE_TYPES: dict[str, str] = {
    "pdf":  "document",
    "doc":  "document",
    "docx": "document",
    "jpg":  "image",
    "jpeg": "image",
    "png":  "image",
    "gif":  "image",
    "bmp":  "image",
    "tif":  "image",
    "tiff": "image",
    "xlsx": "spreadsheet",
    "xls":  "spreadsheet",
    "dwg":  "cad",
    "dxf":  "cad",
    "txt":  "text",
    "rtf":  "text",
}

_MIME_TYPES: dict[str, str] = {
    "pdf":  "application/pdf",
    "doc":  "application/msword",
    "docx": "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
    "jpg":  "image/jpeg",
    "jpeg": "image/jpeg",
    "png":  "image/png",
    "gif":  "image/gif",
    "bmp":  "image/bmp",
    "tif":  "image/tiff",
    "tiff": "image/tiff",
    "xlsx": "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
    "xls":  "application/vnd.ms-excel",
    "dwg":  "application/acad",
    "dxf":  "application/dxf",
    "txt":  "text/plain",
    "rtf":  "application/rtf",
}


def get_extension(filename: str | os.PathLike) -> str:
    """Lowercased extension without the dot ('' if none)."""
    return Path(filename).suffix.lower().lstrip(".")


def get_file_type(filename: str | os.PathLike) -> str:
    return _FILE_TYPES.get(get_extension(filename), "unknown")


def get_mime_type(filename: str | os.PathLike) -> str:
    return _MIME_TYPES.get(get_extension(filename), "application/octet-stream")


def generate_unique_filename(original_name: str) -> str:
    """<stem>_<epoch ms>_<uuid4><ext> — collision-free staging name."""
    path = Path(original_name.replace("\\", "/")).name
    stem, ext = os.path.splitext(path)
    return f"{stem}_{int(time.time() * 1000)}_{uuid.uuid4()}{ext}"


def final_destination(upload_dir: str | os.PathLike, file_path: str | os.PathLike, when: datetime) -> Path:
    """<upload_dir>/documents/<YYYY>/<MM>/<basename>"""
    return Path(upload_dir) / "documents" / f"{when.year:04d}" / f"{when.month:02d}" / Path(file_path).name


def thumbnail_path(file_path: str | os.PathLike) -> Path:
    """<dir>/thumbnails/thumb_<stem>.jpg next to the source file."""
    p = Path(file_path)
    return p.parent / "thumbnails" / f"thumb_{p.stem}.jpg"


# ---------------------------------------------------------------------------
# FileProcessor
# ---------------------------------------------------------------------------

class FileProcessor:
    """
    Stateless service object — construct once per process and inject.
    Limits come from Settings so tests can shrink them.
    """

    def __init__(self, settings: Settings) -> None:
        self._max_size = settings.max_file_size
        self._min_size = settings.min_file_size
        self._formats = settings.supported_format_list
        self._thumb_size = settings.thumbnail_size
        self._thumb_quality = settings.thumbnail_quality

    @property
    def supported_formats(self) -> list[str]:
        return list(self._formats)

    def is_valid_file_type(self, filename: str) -> bool:
        return get_extension(filename) in self._formats

    def is_valid_file_size(self, size: int) -> bool:
        return size <= self._max_size

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    async def validate_file(self, path: str | os.PathLike) -> ValidationResult:
        """
        Side-effect-free check. Order: NOT_FOUND, TOO_LARGE, EMPTY, UNSUPPORTED_TYPE.
        A file smaller than min_file_size cannot hold any supported format's
        header and is reported as EMPTY.
        """
        return await asyncio.get_running_loop().run_in_executor(None, self._validate_sync, Path(path))

    def _validate_sync(self, path: Path) -> ValidationResult:
        try:
            if not path.is_file():
                return _invalid(ValidationCode.NOT_FOUND, "File does not exist")

            size = path.stat().st_size
            if not self.is_valid_file_size(size):
                return _invalid(
                    ValidationCode.TOO_LARGE,
                    f"File size exceeds maximum allowed size of {self._max_size} bytes",
                )
            if size == 0 or size < self._min_size:
                return _invalid(ValidationCode.EMPTY, "File is empty")

            if not self.is_valid_file_type(path.name):
                return _invalid(
                    ValidationCode.UNSUPPORTED_TYPE,
                    f"File type .{get_extension(path)} is not supported. "
                    f"Allowed types: {', '.join(self._formats)}",
                )
            return ValidationResult(valid=True)
        except OSError as exc:
            logger.error("Error validating file | path=%s error=%s", path, exc)
            return _invalid(ValidationCode.INVALID, "File validation failed")

    async def ensure_valid(self, path: str | os.PathLike) -> None:
        """Raise FileValidationError when validate_file() rejects the file."""
        result = await self.validate_file(path)
        if not result.valid:
            raise FileValidationError(ValidationCode(result.code), result.error or "invalid file")

    # ------------------------------------------------------------------
    # Metadata
    # ------------------------------------------------------------------

    async def extract_metadata(self, path: str | os.PathLike) -> dict[str, Any]:
        """Never raises. Returns {} if the file cannot be stat'ed."""
        return await asyncio.get_running_loop().run_in_executor(None, self._metadata_sync, Path(path))

    def _metadata_sync(self, path: Path) -> dict[str, Any]:
        try:
            stats = path.stat()
        except OSError as exc:
            logger.error("Error extracting metadata | path=%s error=%s", path, exc)
            return {}

        file_type = get_file_type(path)
        metadata: dict[str, Any] = {
            "size":     stats.st_size,
            "created":  datetime.fromtimestamp(stats.st_ctime, tz=timezone.utc).isoformat(),
            "modified": datetime.fromtimestamp(stats.st_mtime, tz=timezone.utc).isoformat(),
            "type":     file_type,
        }

        if file_type == "image":
            try:
                from PIL import Image

                with Image.open(path) as img:
                    metadata["dimensions"] = {"width": img.width, "height": img.height}
                    metadata["format"] = (img.format or "").lower()
                    metadata["color_space"] = img.mode
            except Exception as exc:
                # partial metadata is still useful
                logger.warning("Image metadata unavailable | path=%s error=%s", path, exc)

        return metadata

    # ------------------------------------------------------------------
    # Thumbnails
    # ------------------------------------------------------------------

    async def generate_thumbnail(self, path: str | os.PathLike, output_path: str | os.PathLike) -> str:
        """
        Write a JPEG thumbnail for image files and return its path.
        Non-image files return "" (no thumbnail, not an error).
        """
        if get_file_type(path) != "image":
            return ""
        return await asyncio.get_running_loop().run_in_executor(
            None, self._thumbnail_sync, Path(path), Path(output_path)
        )

    def _thumbnail_sync(self, path: Path, output_path: Path) -> str:
        from PIL import Image

        output_path.parent.mkdir(parents=True, exist_ok=True)
        with Image.open(path) as img:
            # thumbnail() keeps aspect ratio and only ever shrinks
            img.thumbnail((self._thumb_size, self._thumb_size))
            if img.mode not in ("RGB", "L"):
                img = img.convert("RGB")
            img.save(output_path, format="JPEG", quality=self._thumb_quality)

        logger.debug("Thumbnail written | src=%s dst=%s", path, output_path)
        return str(output_path)

    # ------------------------------------------------------------------
    # Relocation & cleanup
    # ------------------------------------------------------------------

    async def move_to_final_destination(self, temp_path: str | os.PathLike, final_path: str | os.PathLike) -> None:
        """Create the destination directory and move the file. Errors propagate."""
        await asyncio.get_running_loop().run_in_executor(
            None, self._move_sync, Path(temp_path), Path(final_path)
        )
        logger.info("File moved | src=%s dst=%s", temp_path, final_path)

    @staticmethod
    def _move_sync(temp_path: Path, final_path: Path) -> None:
        final_path.parent.mkdir(parents=True, exist_ok=True)
        # rename when on the same filesystem, copy+unlink otherwise
        shutil.move(str(temp_path), str(final_path))

    async def cleanup_temp_file(self, path: str | os.PathLike) -> None:
        """Best-effort unlink; failures are logged, never raised."""
        try:
            await asyncio.get_running_loop().run_in_executor(None, self._unlink_sync, Path(path))
        except OSError as exc:
            logger.error("Error cleaning up temp file | path=%s error=%s", path, exc)

    @staticmethod
    def _unlink_sync(path: Path) -> None:
        if path.exists():
            path.unlink()
            logger.info("Temp file cleaned up | path=%s", path)


def _invalid(code: ValidationCode, message: str) -> ValidationResult:
    return ValidationResult(valid=False, error=message, code=code.value)

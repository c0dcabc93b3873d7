"""
Parley - Attachment uploads.

Files are uploaded out of band and stored as opaque blobs; the resulting
descriptor is then routed like any other message payload. Attachments are
not encrypted, even for private destinations.

Author: parley contributors
Version: 1.0.0
"""

import hashlib
import logging
import mimetypes
import re
from pathlib import Path
from typing import Optional

import aiofiles

from . import crypto
from .constants import ATTACHMENT_URL_PREFIX, DEFAULT_MIME_TYPE, MAX_FILE_SIZE
from .errors import AttachmentError, ErrorCode, StorageFailure
from .message import FileDescriptor

logger = logging.getLogger(__name__)

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._ -]")


def sanitize_filename(filename: str) -> str:
    """
    Strip path components and unsafe characters from an uploaded name.

    Returns:
        A safe display name, never empty
    """
    name = Path(filename.replace("\\", "/")).name
    name = _UNSAFE_CHARS.sub("_", name).strip(" .")
    return name[:255] or "file"


def guess_mime_type(filename: str) -> str:
    mime_type, _ = mimetypes.guess_type(filename)
    return mime_type or DEFAULT_MIME_TYPE


class AttachmentStore:
    """Blob storage for uploaded attachments.

    Attributes:
        upload_dir: Directory holding stored blobs
        public_url: Base URL prefix clients use to download blobs
        max_file_size: Upload size limit in bytes
    """

    def __init__(
        self,
        upload_dir: Path,
        public_url: str = ATTACHMENT_URL_PREFIX,
        max_file_size: int = MAX_FILE_SIZE,
    ):
        self.upload_dir = Path(upload_dir)
        self.public_url = public_url.rstrip("/")
        self.max_file_size = max_file_size

    async def upload(
        self, filename: str, data: bytes, mime_type: Optional[str] = None
    ) -> FileDescriptor:
        """
        Store an uploaded file and describe it.

        Args:
            filename: Name supplied by the uploader
            data: File contents
            mime_type: Declared MIME type; guessed from the name when absent

        Returns:
            Descriptor with display name, download URL, size and MIME type

        Raises:
            AttachmentError: If the file is empty or too large
            StorageFailure: If the blob cannot be written
        """
        if not data:
            raise AttachmentError(ErrorCode.E602_INVALID_ATTACHMENT, "Empty file")
        if len(data) > self.max_file_size:
            raise AttachmentError(
                ErrorCode.E601_FILE_TOO_LARGE,
                f"File too large: {len(data)} bytes",
                {"size": len(data), "max_size": self.max_file_size},
            )

        name = sanitize_filename(filename or "")
        mime_type = mime_type or guess_mime_type(name)
        stored_name = f"{crypto.generate_uid()}_{name.replace(' ', '_')}"
        path = self.upload_dir / stored_name

        try:
            self.upload_dir.mkdir(parents=True, exist_ok=True)
            async with aiofiles.open(path, "wb") as f:
                await f.write(data)
        except OSError as e:
            logger.error(f"Failed to store attachment {stored_name}: {e}")
            raise StorageFailure(f"Cannot store attachment: {e}") from e

        checksum = hashlib.sha256(data).hexdigest()
        logger.info(f"Stored attachment {stored_name} ({len(data)} bytes, sha256 {checksum[:16]})")
        return FileDescriptor(
            name=name,
            url=f"{self.public_url}/{stored_name}",
            size=len(data),
            mime_type=mime_type,
        )

    def path_for(self, descriptor: FileDescriptor) -> Optional[Path]:
        """Local path of a stored blob, if the descriptor points into this store."""
        prefix = f"{self.public_url}/"
        if not descriptor.url.startswith(prefix):
            return None
        stored_name = descriptor.url[len(prefix):]
        if "/" in stored_name or stored_name in ("", ".", ".."):
            return None
        path = self.upload_dir / stored_name
        return path if path.exists() else None

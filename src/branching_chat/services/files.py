"""Attachment storage keyed by content hash."""

import asyncio
import base64
import binascii
import hashlib
from dataclasses import dataclass
from typing import Dict, Optional
from uuid import UUID

import structlog

from ..domain.errors import InvalidOperationError, PayloadTooLargeError
from ..domain.models import MessageFile

logger = structlog.get_logger()


@dataclass
class StoredFile:
    name: str
    mime: str
    data: bytes
    conversation_id: UUID


def decode_base64_file(file: MessageFile) -> bytes:
    """Decode the payload of a ``base64`` attachment."""
    try:
        return base64.b64decode(file.value, validate=True)
    except (binascii.Error, ValueError):
        raise InvalidOperationError(f"File {file.name!r} is not valid base64")


def check_file_size(name: str, data: bytes, max_size: int) -> None:
    if max_size and len(data) > max_size:
        raise PayloadTooLargeError(
            f"File too large, should be <{max_size // (1024 * 1024)}MB"
        )


class FileStore:
    """In-memory blob store. Files are addressed by their sha256."""

    def __init__(self) -> None:
        self._files: Dict[str, StoredFile] = {}
        self._lock = asyncio.Lock()

    async def upload(self, name: str, mime: str, data: bytes, conversation_id: UUID) -> MessageFile:
        """Store ``data`` and return the hash reference to put on a message."""
        sha = hashlib.sha256(data).hexdigest()
        async with self._lock:
            self._files[sha] = StoredFile(
                name=name, mime=mime, data=data, conversation_id=conversation_id
            )
        logger.info(
            "file_uploaded",
            conversation_id=str(conversation_id),
            sha=sha,
            size=len(data),
            mime=mime,
        )
        return MessageFile(type="hash", name=name, value=sha, mime=mime)

    async def get(self, sha: str, conversation_id: Optional[UUID] = None) -> Optional[StoredFile]:
        async with self._lock:
            stored = self._files.get(sha)
        if stored is None:
            return None
        if conversation_id is not None and stored.conversation_id != conversation_id:
            return None
        return stored

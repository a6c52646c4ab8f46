from __future__ import annotations

import asyncio
import base64
import json
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

from loguru import logger


@dataclass(frozen=True)
class FileRecord:
    file_id: str
    user_id: str
    filename: str
    media_type: str
    filepath: str = ""
    source: str = "local"
    width: int | None = None
    height: int | None = None
    text: str | None = None


@runtime_checkable
class FileSource(Protocol):
    async def find_by_ids(self, file_ids: list[str]) -> list[FileRecord]: ...
    async def read_bytes(self, file: FileRecord) -> bytes | None: ...


@dataclass(frozen=True)
class EncodedAttachments:
    text: str = ""
    images: list[dict] = field(default_factory=list)
    file_ids: list[str] = field(default_factory=list)

    @property
    def is_empty(self) -> bool:
        return not self.text and not self.images


class DirectoryFileSource:
    """Files stored on disk as ``<id>.json`` metadata next to the payload it names."""

    def __init__(self, root: str):
        self._root = Path(root)

    async def find_by_ids(self, file_ids: list[str]) -> list[FileRecord]:
        return await asyncio.to_thread(self._load_records, file_ids)

    async def read_bytes(self, file: FileRecord) -> bytes | None:
        path = self._root / file.filepath
        if not path.is_file():
            return None
        return await asyncio.to_thread(path.read_bytes)

    def _load_records(self, file_ids: list[str]) -> list[FileRecord]:
        records: list[FileRecord] = []
        for file_id in file_ids:
            meta_path = self._root / f"{Path(file_id).name}.json"
            if not meta_path.is_file():
                continue
            raw = json.loads(meta_path.read_text(encoding="utf-8"))
            records.append(
                FileRecord(
                    file_id=file_id,
                    user_id=str(raw.get("user", "")),
                    filename=str(raw.get("filename", file_id)),
                    media_type=str(raw.get("type", "application/octet-stream")),
                    filepath=str(raw.get("filepath", "")),
                    source=str(raw.get("source", "local")),
                    width=raw.get("width"),
                    height=raw.get("height"),
                    text=raw.get("text"),
                )
            )
        return records


class AttachmentEncoder:
    """Turns attached file ids into provider-neutral content.

    Images become ``{"type": "image", "media_type", "data"}`` blocks; text
    documents are folded into one markdown block appended to the prompt.
    Nothing here fails a request: any problem is logged and the attachment is
    skipped.
    """

    def __init__(self, source: FileSource | None):
        self._source = source

    async def encode(self, file_ids: list[str], user_id: str) -> EncodedAttachments:
        if not file_ids or self._source is None:
            return EncodedAttachments()
        try:
            return await self._encode(file_ids, user_id)
        except Exception as ex:
            logger.warning(f"Attachment processing failed, continuing without files: {ex}")
            return EncodedAttachments()

    async def _encode(self, file_ids: list[str], user_id: str) -> EncodedAttachments:
        files = [f for f in await self._source.find_by_ids(file_ids) if f.user_id == user_id]
        if not files:
            logger.debug(f"No attachments owned by user={user_id} among {len(file_ids)} file(s)")
            return EncodedAttachments()

        documents: list[str] = []
        images: list[dict] = []
        used: list[str] = []
        for file in files:
            if file.source == "text" and file.text:
                documents.append(f'# "{file.filename}"\n{file.text}\n')
                used.append(file.file_id)
                continue
            if not file.media_type.startswith("image/") or not file.width or not file.height:
                logger.debug(f"Skipping attachment {file.file_id}: not an image or missing dimensions")
                continue
            data = await self._read_image(file)
            if data is None:
                continue
            images.append({"type": "image", "media_type": file.media_type, "data": data})
            used.append(file.file_id)

        text = "Attached document(s):\n```md\n" + "\n\n---\n\n".join(documents) + "```" if documents else ""
        return EncodedAttachments(text=text, images=images, file_ids=used)

    async def _read_image(self, file: FileRecord) -> str | None:
        try:
            payload = await self._source.read_bytes(file)
        except Exception as ex:
            logger.warning(f"Failed to read image {file.file_id}: {ex}")
            return None
        if not payload:
            logger.warning(f"Image not found in storage: {file.filepath or file.file_id}")
            return None
        return base64.b64encode(payload).decode("ascii")


def build_user_content(text: str, attachments: EncodedAttachments) -> str | list[dict]:
    """Combine the prompt text with encoded attachments into neutral content."""
    prompt = f"{text}\n\n{attachments.text}" if attachments.text else text
    if not attachments.images:
        return prompt
    return [{"type": "text", "text": prompt}, *attachments.images]

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass
import logging
from pathlib import Path
import re
from typing import Protocol

from opsflow.core.errors import DestinationWriteError

logger = logging.getLogger(__name__)

_UNSAFE_FILENAME_RE = re.compile(r"[^A-Za-z0-9._ -]+")
LOCAL_DESTINATION_TYPES = ("data_room", "vendor_folder", "customs")


@dataclass(frozen=True)
class FiledDocument:
    filename: str
    mime_type: str
    content: bytes
    category: str
    vendor_name: str = ""
    document_number: str = ""


class DestinationWriter(Protocol):
    def write(self, destination_path: str, document: FiledDocument) -> str:
        """Store the document and return a reference (path, URL or object id)."""
        ...

    def discard(self, reference: str) -> None:
        """Remove a document previously returned by ``write``."""
        ...


def safe_filename(filename: str) -> str:
    name = Path(filename or "").name
    name = _UNSAFE_FILENAME_RE.sub("_", name).strip(" .")
    return name or "attachment"


class LocalFolderWriter:
    def __init__(self, root: Path) -> None:
        self._root = Path(root)

    def write(self, destination_path: str, document: FiledDocument) -> str:
        root = self._root.resolve()
        relative = destination_path.strip().lstrip("/\\")
        folder = (root / relative).resolve()
        if not folder.is_relative_to(root):
            raise DestinationWriteError(f"Destination path escapes the filing root: {destination_path}")

        target = folder / safe_filename(document.filename)
        try:
            folder.mkdir(parents=True, exist_ok=True)
            target = _first_free_path(target)
            target.write_bytes(document.content)
        except OSError as exc:
            raise DestinationWriteError(f"Could not write {target}: {exc}") from exc
        return str(target)

    def discard(self, reference: str) -> None:
        root = self._root.resolve()
        target = Path(reference).resolve()
        if not target.is_relative_to(root):
            raise DestinationWriteError(f"Refusing to remove a file outside the filing root: {reference}")
        try:
            target.unlink(missing_ok=True)
        except OSError as exc:
            raise DestinationWriteError(f"Could not remove {target}: {exc}") from exc


def _first_free_path(target: Path) -> Path:
    if not target.exists():
        return target
    counter = 1
    while True:
        candidate = target.with_name(f"{target.stem}-{counter}{target.suffix}")
        if not candidate.exists():
            return candidate
        counter += 1


class DestinationRegistry:
    def __init__(self, writers: Mapping[str, DestinationWriter]) -> None:
        self._writers = dict(writers)

    def supports(self, destination_type: str) -> bool:
        return destination_type in self._writers

    def _writer(self, destination_type: str) -> DestinationWriter:
        writer = self._writers.get(destination_type)
        if writer is None:
            raise DestinationWriteError(f"No writer configured for destination '{destination_type}'")
        return writer

    def write(self, destination_type: str, destination_path: str, document: FiledDocument) -> str:
        reference = self._writer(destination_type).write(destination_path, document)
        logger.info(
            "Document written to destination",
            extra={
                "event": "destination_write_completed",
                "destination_type": destination_type,
                "destination_path": destination_path,
                "reference": reference,
            },
        )
        return reference

    def discard(self, destination_type: str, reference: str) -> None:
        self._writer(destination_type).discard(reference)
        logger.info(
            "Orphaned document removed from destination",
            extra={"event": "destination_write_discarded", "destination_type": destination_type, "reference": reference},
        )


def build_destination_registry(
    filing_root: Path,
    extra_writers: Mapping[str, DestinationWriter] | None = None,
) -> DestinationRegistry:
    """Local folders back the internal destinations; remote ones (google_drive) must be injected."""
    writers: dict[str, DestinationWriter] = {
        destination_type: LocalFolderWriter(Path(filing_root) / destination_type)
        for destination_type in LOCAL_DESTINATION_TYPES
    }
    writers.update(extra_writers or {})
    return DestinationRegistry(writers)

import pytest

from opsflow.core.errors import DestinationWriteError
from opsflow.services.destination_writers import (
    DestinationRegistry,
    FiledDocument,
    LocalFolderWriter,
    build_destination_registry,
    safe_filename,
)


def _document(filename: str = "invoice.pdf", content: bytes = b"%PDF-1.4") -> FiledDocument:
    return FiledDocument(filename=filename, mime_type="application/pdf", content=content, category="invoice")


def test_safe_filename_strips_directories_and_odd_characters() -> None:
    assert safe_filename("../../evil.pdf") == "evil.pdf"
    assert safe_filename("inv#42?.pdf") == "inv_42_.pdf"
    assert safe_filename("") == "attachment"


def test_local_writer_creates_folders_and_avoids_overwrites(tmp_path) -> None:
    writer = LocalFolderWriter(tmp_path)

    first = writer.write("/invoice/Acme/2026-03/", _document(content=b"one"))
    second = writer.write("/invoice/Acme/2026-03/", _document(content=b"two"))

    assert first.endswith("invoice.pdf")
    assert second.endswith("invoice-1.pdf")
    assert (tmp_path / "invoice" / "Acme" / "2026-03" / "invoice.pdf").read_bytes() == b"one"
    assert (tmp_path / "invoice" / "Acme" / "2026-03" / "invoice-1.pdf").read_bytes() == b"two"


def test_local_writer_rejects_paths_outside_root(tmp_path) -> None:
    writer = LocalFolderWriter(tmp_path / "root")
    with pytest.raises(DestinationWriteError, match="escapes"):
        writer.write("../outside", _document())


def test_registry_routes_by_destination_type(tmp_path) -> None:
    registry = build_destination_registry(tmp_path)

    reference = registry.write("customs", "/2026/", _document("entry.pdf"))

    assert (tmp_path / "customs" / "2026" / "entry.pdf").exists()
    assert reference.endswith("entry.pdf")
    assert registry.supports("data_room")
    assert not registry.supports("google_drive")


def test_registry_without_writer_raises() -> None:
    with pytest.raises(DestinationWriteError, match="google_drive"):
        DestinationRegistry({}).write("google_drive", "/x/", _document())


def test_discard_removes_written_file_and_guards_root(tmp_path) -> None:
    registry = build_destination_registry(tmp_path)
    reference = registry.write("data_room", "/2026/", _document())

    registry.discard("data_room", reference)

    assert not (tmp_path / "data_room" / "2026" / "invoice.pdf").exists()
    registry.discard("data_room", reference)
    with pytest.raises(DestinationWriteError, match="outside"):
        registry.discard("data_room", str(tmp_path / "customs" / "other.pdf"))

"""
Profile import/export.

This module wraps the store's `import_from` / `export_to` with naming policy and
optional zstd compression:

- Export file names are ``<name>.am.json`` (``.am.json.zst`` when compressed).
- An imported profile is named after the source file unless a name is given,
  so ``work.am.json`` imports as ``work``.
- Compressed input is detected by the zstd frame magic, not by file name.

Schema versions are never inferred here; the document parser owns them.
"""

from __future__ import annotations

import io
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO

import zstandard as zstd

from profile_engine.data_models import IssueSeverity, Profile, ValidationIssue
from profile_engine.document import parse, validate
from profile_engine.errors import ProfileParseError
from profile_engine.operations import OperationRegistry
from profile_engine.profile_store.api import ProfileStore

EXPORT_SUFFIX = ".am.json"
COMPRESSED_SUFFIX = ".zst"
ZSTD_MAGIC = b"\x28\xb5\x2f\xfd"

# Trimmed in this order: "work.am.json.zst" -> "work".
_TRIMMED_SUFFIXES = (".zst", ".json", ".am")

# Upper bound on decompressed document size; profiles are small text documents.
MAX_DOCUMENT_BYTES = 16 * 1024 * 1024


@dataclass(frozen=True, slots=True)
class ImportResult:
    """
    Result of a successful import.

    Attributes
    ----------
    profile:
        The imported profile, as saved.
    warnings:
        Non-fatal validation issues (e.g., unknown operation kinds).
    """

    profile: Profile
    warnings: tuple[ValidationIssue, ...] = ()


def suggest_profile_name(source: str | Path) -> str:
    """Derive a profile name from a file name or path by trimming known suffixes."""
    name = Path(str(source)).name
    for suffix in _TRIMMED_SUFFIXES:
        if name.lower().endswith(suffix) and len(name) > len(suffix):
            name = name[: -len(suffix)]
    return name


def export_filename(name: str, *, compress: bool = False) -> str:
    """Return the default export file name for a profile."""
    filename = name + EXPORT_SUFFIX
    if compress:
        filename += COMPRESSED_SUFFIX
    return filename


def is_compressed(data: bytes) -> bool:
    return data.startswith(ZSTD_MAGIC)


def compress_document(data: bytes, *, level: int = 10) -> bytes:
    """Compress document bytes as a single zstd frame."""
    return zstd.ZstdCompressor(level=level).compress(data)


def decompress_document(data: bytes) -> bytes:
    """
    Decompress a zstd-framed document.

    Raises
    ------
    ProfileParseError
        If the frame is corrupt or larger than `MAX_DOCUMENT_BYTES`.
    """
    chunks: list[bytes] = []
    total = 0
    try:
        with zstd.ZstdDecompressor().stream_reader(io.BytesIO(data)) as reader:
            while True:
                chunk = reader.read(64 * 1024)
                if not chunk:
                    break
                total += len(chunk)
                if total > MAX_DOCUMENT_BYTES:
                    raise ProfileParseError("decompressed document is too large")
                chunks.append(chunk)
    except zstd.ZstdError as exc:
        raise ProfileParseError(f"corrupt zstd data ({exc})") from exc
    return b"".join(chunks)


def import_profile(
    store: ProfileStore,
    stream: BinaryIO,
    *,
    suggested_name: str | None = None,
    registry: OperationRegistry | None = None,
) -> ImportResult:
    """
    Import a profile document from a byte stream.

    Parameters
    ----------
    store:
        Destination store.
    stream:
        Binary stream holding a plain or zstd-compressed document.
    suggested_name:
        Name to save under. Defaults to a name derived from ``stream.name``
        when the stream has one, else the document's own name.
    registry:
        Used to report warnings for unknown operation kinds.

    Raises
    ------
    ProfileParseError
        If the stream does not hold a valid document.
    ProfileValidationError
        If the profile has error-severity issues.
    ProfileExistsError
        If the name is taken; retry with another `suggested_name`.
    """
    data = stream.read()
    if is_compressed(data):
        data = decompress_document(data)

    name = suggested_name
    if name is None:
        stream_name = getattr(stream, "name", None)
        if isinstance(stream_name, str) and stream_name:
            name = suggest_profile_name(stream_name)

    profile = store.import_from(io.BytesIO(data), suggested_name=name)

    warnings: tuple[ValidationIssue, ...] = ()
    if registry is not None:
        candidate = parse(data)
        warnings = tuple(
            issue
            for issue in validate(candidate, registry)
            if issue.severity is IssueSeverity.WARNING
        )
    return ImportResult(profile=profile, warnings=warnings)


def export_profile(
    store: ProfileStore,
    name: str,
    stream: BinaryIO,
    *,
    compress: bool = False,
) -> None:
    """
    Export a stored profile into a byte stream.

    Raises
    ------
    ProfileNotFoundError
        If the profile does not exist.
    """
    buffer = io.BytesIO()
    store.export_to(name, buffer)
    data = buffer.getvalue()
    if compress:
        data = compress_document(data)
    stream.write(data)


"""Authenticode digests of PE/COFF images."""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass
from typing import Iterator

PE32_MAGIC = 0x10B
PE32_PLUS_MAGIC = 0x20B

_DOS_MAGIC = b"MZ"
_PE_SIGNATURE = b"PE\x00\x00"
_LFANEW_OFFSET = 0x3C
_COFF = struct.Struct("<HHIIIHH")
_SECTION = struct.Struct("<8sIIIIIIHHI")
_DIRECTORY_ENTRY = struct.Struct("<II")
_CERTIFICATE_TABLE_INDEX = 4
_CHECKSUM_FIELD = 64
_SIZE_OF_HEADERS_FIELD = 60

# Offsets of NumberOfRvaAndSizes and of the data directories in the optional header.
_DIRECTORY_LAYOUT = {
    PE32_MAGIC: (92, 96),
    PE32_PLUS_MAGIC: (108, 112),
}


class PEFormatError(ValueError):
    """Raised when an image is not a well-formed PE/COFF file."""


@dataclass(frozen=True)
class _Section:
    pointer: int
    size: int


def _require(image: bytes, offset: int, length: int, what: str) -> None:
    if offset < 0 or offset + length > len(image):
        raise PEFormatError(f"{what} lies outside the image")


def _unpack(fmt: str, image: bytes, offset: int, what: str) -> tuple:
    _require(image, offset, struct.calcsize(fmt), what)
    return struct.unpack_from(fmt, image, offset)


def _hashed_ranges(image: bytes) -> Iterator[tuple[int, int]]:
    """Yield the (start, end) ranges of the image covered by the Authenticode digest."""
    if len(image) < _LFANEW_OFFSET + 4 or image[:2] != _DOS_MAGIC:
        raise PEFormatError("missing DOS header")
    (pe_offset,) = _unpack("<I", image, _LFANEW_OFFSET, "PE header offset")
    _require(image, pe_offset, len(_PE_SIGNATURE) + _COFF.size, "PE header")
    if image[pe_offset : pe_offset + 4] != _PE_SIGNATURE:
        raise PEFormatError("missing PE signature")
    _machine, section_count, _, _, _, optional_size, _ = _COFF.unpack_from(
        image, pe_offset + 4
    )

    optional = pe_offset + 4 + _COFF.size
    (magic,) = _unpack("<H", image, optional, "optional header")
    try:
        count_field, directories = _DIRECTORY_LAYOUT[magic]
    except KeyError:
        raise PEFormatError(f"unknown optional header magic 0x{magic:x}") from None
    if optional_size < directories:
        raise PEFormatError("optional header is too short")
    _require(image, optional, directories, "optional header")

    (size_of_headers,) = struct.unpack_from(
        "<I", image, optional + _SIZE_OF_HEADERS_FIELD
    )
    (directory_count,) = struct.unpack_from("<I", image, optional + count_field)
    if size_of_headers > len(image):
        raise PEFormatError("SizeOfHeaders exceeds the image size")

    checksum = optional + _CHECKSUM_FIELD
    certificate_entry = directories + _DIRECTORY_ENTRY.size * _CERTIFICATE_TABLE_INDEX
    certificate_size = 0
    if (
        directory_count > _CERTIFICATE_TABLE_INDEX
        and certificate_entry + _DIRECTORY_ENTRY.size <= optional_size
    ):
        entry = optional + certificate_entry
        _, certificate_size = _unpack("<II", image, entry, "certificate table entry")
        yield 0, checksum
        yield checksum + 4, entry
        yield entry + _DIRECTORY_ENTRY.size, size_of_headers
    else:
        yield 0, checksum
        yield checksum + 4, size_of_headers

    table = optional + optional_size
    _require(image, table, _SECTION.size * section_count, "section table")
    sections = []
    for index in range(section_count):
        fields = _SECTION.unpack_from(image, table + _SECTION.size * index)
        size, pointer = fields[3], fields[4]
        if size == 0:
            continue
        _require(image, pointer, size, f"section {index}")
        sections.append(_Section(pointer=pointer, size=size))

    hashed = size_of_headers
    for section in sorted(sections, key=lambda s: s.pointer):
        yield section.pointer, section.pointer + section.size
        hashed += section.size

    trailing_end = len(image) - certificate_size
    if len(image) > hashed and trailing_end > hashed:
        yield hashed, trailing_end


def authenticode_hash(image: bytes, algorithm: str = "sha384") -> bytes:
    """Return the Authenticode digest of a PE/COFF image."""
    data = bytes(image)
    digest = hashlib.new(algorithm)
    for start, end in _hashed_ranges(data):
        digest.update(data[start:end])
    return digest.digest()
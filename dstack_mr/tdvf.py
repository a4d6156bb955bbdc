"""TDVF metadata parsing and MRTD computation."""

from __future__ import annotations

import hashlib
import struct
from dataclasses import dataclass
from enum import IntEnum
from typing import Sequence

PAGE_SIZE = 0x1000
MR_EXTEND_GRANULARITY = 0x100
ATTRIBUTE_MR_EXTEND = 0x1
ATTRIBUTE_PAGE_AUG = 0x2
SECTION_TD_HOB = 0x02
DEFAULT_TD_HOB_ADDRESS = 0x809000

TDX_METADATA_OFFSET_GUID = "e47a6535-984a-4798-865e-4685a7bf8ec2"
TABLE_FOOTER_GUID = "96b582de-1fb2-45f7-baea-a366c55a082d"

_BYTES_AFTER_TABLE_FOOTER = 32
_TDVF_SIGNATURE = b"TDVF"
_TDVF_VERSION = 1
_DESCRIPTOR = struct.Struct("<4sIII")
_SECTION = struct.Struct("<IIQQII")


class TdvfError(Exception):
    """Raised when firmware carries missing or malformed TDVF metadata."""


class MrtdVariant(IntEnum):
    """Order in which the VMM adds and extends firmware pages."""

    TWO_PASS = 0
    SINGLE_PASS = 1


def encode_guid(guid: str) -> bytes:
    """Encode a textual UEFI GUID in its mixed-endian binary form."""
    out = bytearray()
    for index, atom in enumerate(guid.split("-")):
        try:
            raw = bytes.fromhex(atom)
        except ValueError as exc:
            raise ValueError(f"bad GUID: {guid!r}") from exc
        out += raw[::-1] if index <= 2 else raw
    return bytes(out)


@dataclass(frozen=True)
class TdvfSection:
    """One section entry of the TDVF metadata descriptor."""

    data_offset: int
    raw_data_size: int
    memory_address: int
    memory_data_size: int
    section_type: int
    attributes: int

    @property
    def extends_measurement(self) -> bool:
        return bool(self.attributes & ATTRIBUTE_MR_EXTEND)

    @property
    def page_aug(self) -> bool:
        return bool(self.attributes & ATTRIBUTE_PAGE_AUG)


def _page_add(digest, section: TdvfSection, page: int) -> None:
    if section.page_aug:
        return
    buf = bytearray(128)
    buf[:12] = b"MEM.PAGE.ADD"
    struct.pack_into("<Q", buf, 16, section.memory_address + page * PAGE_SIZE)
    digest.update(buf)


def _mr_extend(digest, firmware: bytes, section: TdvfSection, page: int) -> None:
    if not section.extends_measurement:
        return
    for chunk in range(PAGE_SIZE // MR_EXTEND_GRANULARITY):
        delta = page * PAGE_SIZE + chunk * MR_EXTEND_GRANULARITY
        buf = bytearray(128)
        buf[:9] = b"MR.EXTEND"
        struct.pack_into("<Q", buf, 16, section.memory_address + delta)
        digest.update(buf)

        start = section.data_offset + delta
        content = firmware[start : start + MR_EXTEND_GRANULARITY]
        if len(content) != MR_EXTEND_GRANULARITY:
            raise TdvfError(f"section data at offset {start} lies outside the firmware")
        digest.update(content)


@dataclass(frozen=True)
class TdvfMetadata:
    """Parsed TDVF metadata: the ordered list of sections."""

    sections: Sequence[TdvfSection] = ()

    def compute_mrtd(
        self, firmware: bytes, variant: MrtdVariant = MrtdVariant.TWO_PASS
    ) -> bytes:
        """Compute the MRTD the TDX module would produce for this firmware."""
        variant = MrtdVariant(variant)
        firmware = bytes(firmware)
        digest = hashlib.sha384()
        for section in self.sections:
            pages = range(section.memory_data_size // PAGE_SIZE)
            if variant is MrtdVariant.TWO_PASS:
                for page in pages:
                    _page_add(digest, section, page)
                for page in pages:
                    _mr_extend(digest, firmware, section, page)
            else:
                for page in pages:
                    _page_add(digest, section, page)
                    _mr_extend(digest, firmware, section, page)
        return digest.digest()

    def td_hob_address(self) -> int:
        """Return the TD HOB base address, or the default if no section names one."""
        return next(
            (s.memory_address for s in self.sections if s.section_type == SECTION_TD_HOB),
            DEFAULT_TD_HOB_ADDRESS,
        )


def _find_table_entry(tables: bytes, wanted: bytes) -> bytes:
    offset = len(tables)
    while True:
        if offset < 18:
            raise TdvfError("missing TDVF metadata in firmware")
        guid = tables[offset - 16 : offset]
        (entry_len,) = struct.unpack_from("<H", tables, offset - 18)
        if offset < 18 + entry_len:
            raise TdvfError(f"malformed OVMF table in firmware at offset {offset}")
        if guid == wanted:
            return tables[offset - 18 - entry_len : offset - 18]
        if entry_len == 0:
            raise TdvfError(f"malformed OVMF table in firmware at offset {offset}")
        offset -= entry_len


def _parse_section(index: int, raw: bytes) -> TdvfSection:
    section = TdvfSection(*_SECTION.unpack(raw))
    if section.memory_address % PAGE_SIZE:
        raise TdvfError(f"TDVF metadata section {index} has non-aligned memory address")
    if section.memory_data_size < section.raw_data_size:
        raise TdvfError(
            f"TDVF metadata section {index} memory data size is less than raw data size"
        )
    if section.memory_data_size % PAGE_SIZE:
        raise TdvfError(
            f"TDVF metadata section {index} has non-aligned memory data size"
        )
    if section.extends_measurement and section.raw_data_size < section.memory_data_size:
        raise TdvfError(
            f"TDVF metadata section {index} raw data size is less than memory data size"
        )
    return section


def parse_tdvf_metadata(firmware: bytes) -> TdvfMetadata:
    """Parse the TDVF metadata from an OVMF firmware image."""
    fw = bytes(firmware)
    offset = len(fw) - _BYTES_AFTER_TABLE_FOOTER
    if offset < 18:
        raise TdvfError("malformed OVMF table footer")
    if fw[offset - 16 : offset] != encode_guid(TABLE_FOOTER_GUID):
        raise TdvfError("malformed OVMF table footer")
    (tables_len,) = struct.unpack_from("<H", fw, offset - 18)
    if tables_len == 0 or tables_len > offset - 18:
        raise TdvfError("malformed OVMF table footer")
    tables = fw[offset - 18 - tables_len : offset - 18]

    entry = _find_table_entry(tables, encode_guid(TDX_METADATA_OFFSET_GUID))
    if len(entry) < 4:
        raise TdvfError("malformed TDVF metadata offset entry in firmware")
    (distance,) = struct.unpack("<I", entry[-4:])
    descriptor_offset = len(fw) - distance
    if descriptor_offset < 0 or descriptor_offset + _DESCRIPTOR.size > len(fw):
        raise TdvfError("malformed TDVF metadata descriptor in firmware")

    signature, _length, version, count = _DESCRIPTOR.unpack_from(fw, descriptor_offset)
    if signature != _TDVF_SIGNATURE:
        raise TdvfError("malformed TDVF metadata descriptor in firmware")
    if version != _TDVF_VERSION:
        raise TdvfError("unsupported TDVF metadata descriptor version in firmware")

    sections = []
    for index in range(count):
        start = descriptor_offset + _DESCRIPTOR.size + _SECTION.size * index
        raw = fw[start : start + _SECTION.size]
        if len(raw) != _SECTION.size:
            raise TdvfError(f"TDVF metadata section {index} lies outside the firmware")
        sections.append(_parse_section(index, raw))
    return TdvfMetadata(sections=tuple(sections))
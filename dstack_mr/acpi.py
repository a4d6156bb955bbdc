"""QEMU ACPI tables, RSDP and table-loader commands for a TD guest."""

from __future__ import annotations

import gzip
import json
import struct
from dataclasses import dataclass
from os import PathLike
from pathlib import Path
from typing import Iterable, Mapping, Union

LOADER_LENGTH = 4096
MEMORY_SPLIT_MB = 2816

_FIXED_STRING_LENGTH = 56
_TABLES_FILE = "etc/acpi/tables"
_RSDP_FILE = "etc/acpi/rsdp"
_GZIP_MAGIC = b"\x1f\x8b"


class AcpiError(Exception):
    """Raised when ACPI tables cannot be located or generated."""


@dataclass(frozen=True)
class AcpiTable:
    """Location of one ACPI table inside a table blob."""

    offset: int
    checksum_offset: int
    length: int


def _fixed_string(text: str) -> bytes:
    return text.encode().ljust(_FIXED_STRING_LENGTH, b"\x00")


@dataclass(frozen=True)
class LoaderAllocate:
    """Loader command that allocates a file in guest memory."""

    file: str
    alignment: int
    zone: int

    def encode(self) -> bytes:
        return (
            struct.pack("<I", 1)
            + _fixed_string(self.file)
            + struct.pack("<IB", self.alignment, self.zone)
            + bytes(63)
        )


@dataclass(frozen=True)
class LoaderAddPointer:
    """Loader command that patches a pointer from one file into another."""

    pointer_file: str
    pointee_file: str
    pointer_offset: int
    pointer_size: int

    def encode(self) -> bytes:
        return (
            struct.pack("<I", 2)
            + _fixed_string(self.pointer_file)
            + _fixed_string(self.pointee_file)
            + struct.pack("<IB", self.pointer_offset, self.pointer_size)
            + bytes(7)
        )


@dataclass(frozen=True)
class LoaderAddChecksum:
    """Loader command that computes a checksum over a byte range."""

    file: str
    result_offset: int
    start: int
    length: int

    def encode(self) -> bytes:
        return (
            struct.pack("<I", 3)
            + _fixed_string(self.file)
            + struct.pack("<III", self.result_offset, self.start, self.length)
            + bytes(56)
        )


LoaderCommand = Union[LoaderAllocate, LoaderAddPointer, LoaderAddChecksum]


@dataclass(frozen=True)
class AcpiTables:
    """Raw ACPI tables, the RSDP and the table-loader blob."""

    tables: bytes
    rsdp: bytes
    loader: bytes


def find_acpi_table(tables: bytes, signature: str) -> AcpiTable:
    """Walk the table blob and return the table with the given signature."""
    if len(tables) < 12:
        raise AcpiError("ACPI table is too short")
    offset = 0
    while True:
        if offset >= len(tables):
            raise AcpiError(f"ACPI table '{signature}' not found")
        if offset + 8 > len(tables):
            raise AcpiError(f"ACPI table header truncated at offset {offset}")
        table_signature = bytes(tables[offset : offset + 4]).decode("latin-1")
        (length,) = struct.unpack_from("<I", tables, offset + 4)
        if table_signature == signature:
            return AcpiTable(offset=offset, checksum_offset=offset + 9, length=length)
        if length == 0:
            raise AcpiError(
                f"ACPI table '{table_signature}' not found at offset {offset}"
            )
        offset += length


def build_loader(commands: Iterable[LoaderCommand]) -> bytes:
    """Encode loader commands and zero-pad the result to the loader length."""
    data = b"".join(command.encode() for command in commands)
    return data.ljust(LOADER_LENGTH, b"\x00")


def load_templates(path: Union[str, PathLike]) -> dict[str, str]:
    """Read a JSON (optionally gzip-compressed) map of CPU count to hex template."""
    raw = Path(path).read_bytes()
    if raw.startswith(_GZIP_MAGIC):
        try:
            raw = gzip.decompress(raw)
        except (OSError, EOFError) as exc:
            raise AcpiError(f"failed to decompress template data: {exc}") from exc
    try:
        templates = json.loads(raw)
    except ValueError as exc:
        raise AcpiError(f"failed to parse template data: {exc}") from exc
    if not isinstance(templates, dict) or not all(
        isinstance(key, str) and isinstance(value, str)
        for key, value in templates.items()
    ):
        raise AcpiError("failed to parse template data: expected a map of strings")
    return templates


def generate_tables_qemu(
    memory_size: int, cpu_count: int, templates: Mapping[str, str]
) -> AcpiTables:
    """Generate the ACPI tables for a TD with the given memory (MiB) and CPUs."""
    try:
        template_hex = templates[str(cpu_count)]
    except KeyError:
        raise AcpiError(f"template for {cpu_count} CPUs is not available") from None
    try:
        tpl = bytearray.fromhex(template_hex)
    except ValueError as exc:
        raise AcpiError(f"malformed ACPI table template, {exc}") from exc

    dsdt = find_acpi_table(tpl, "DSDT")
    length_offset = dsdt.length - 0x2AC
    range_minimum_offset = length_offset - 12
    if range_minimum_offset < 0 or length_offset + 4 > len(tpl):
        raise AcpiError("DSDT is too short to hold the memory range descriptor")

    if memory_size >= MEMORY_SPLIT_MB:
        range_minimum, range_length = 0x80000000, 0x60000000
    else:
        range_minimum = (memory_size * 1024 * 1024) & 0xFFFFFFFF
        range_length = (0xE0000000 - range_minimum) & 0xFFFFFFFF
    struct.pack_into("<I", tpl, range_minimum_offset, range_minimum)
    struct.pack_into("<I", tpl, length_offset, range_length)

    facp = find_acpi_table(tpl, "FACP")
    apic = find_acpi_table(tpl, "APIC")
    mcfg = find_acpi_table(tpl, "MCFG")
    waet = find_acpi_table(tpl, "WAET")
    rsdt = find_acpi_table(tpl, "RSDT")

    rsdp = b"RSD PTR " + b"\x00" + b"BOCHS " + b"\x00" + struct.pack("<I", rsdt.offset)

    def checksum(table: AcpiTable) -> LoaderAddChecksum:
        return LoaderAddChecksum(
            _TABLES_FILE, table.checksum_offset, table.offset, table.length
        )

    def pointer(offset: int, size: int) -> LoaderAddPointer:
        return LoaderAddPointer(_TABLES_FILE, _TABLES_FILE, offset, size)

    commands: list[LoaderCommand] = [
        LoaderAllocate(_RSDP_FILE, 16, 2),
        LoaderAllocate(_TABLES_FILE, 64, 1),
        checksum(dsdt),
        pointer(facp.offset + 36, 4),
        pointer(facp.offset + 40, 4),
        pointer(facp.offset + 140, 8),
        checksum(facp),
        checksum(apic),
        checksum(mcfg),
        checksum(waet),
        pointer(rsdt.offset + 36, 4),
        pointer(rsdt.offset + 40, 4),
        pointer(rsdt.offset + 44, 4),
        pointer(rsdt.offset + 48, 4),
        checksum(rsdt),
        LoaderAddPointer(_RSDP_FILE, _TABLES_FILE, 16, 4),
        LoaderAddChecksum(_RSDP_FILE, 8, 0, 20),
    ]
    return AcpiTables(tables=bytes(tpl), rsdp=rsdp, loader=build_loader(commands))
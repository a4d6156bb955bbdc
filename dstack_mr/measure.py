"""TDX measurement registers (MRTD and RTMR0-2) for a QEMU-launched TD."""

from __future__ import annotations

import binascii
import hashlib
import logging
import struct
from dataclasses import dataclass
from typing import Iterable, Mapping, Optional

from .acpi import MEMORY_SPLIT_MB, AcpiError, generate_tables_qemu
from .authenticode import PEFormatError, authenticode_hash
from .tdvf import (
    DEFAULT_TD_HOB_ADDRESS,
    MrtdVariant,
    TdvfMetadata,
    encode_guid,
    parse_tdvf_metadata,
)

logger = logging.getLogger(__name__)

DIGEST_SIZE = 48
ACPI_DATA_SIZE = 0x28000
MIN_KERNEL_LENGTH = 0x1000

_U32 = 0xFFFFFFFF
_U64 = 0xFFFFFFFFFFFFFFFF
_DEFAULT_INITRD_MAX = 0x37FFFFFF
_XLF_CAN_BE_LOADED_ABOVE_4G = 0x40

_CFV_IMAGE_HASH = bytes.fromhex(
    "344BC51C980BA621AAA00DA3ED7436F7D6E549197DFE699515DFA2C6583D95E6"
    "412AF21C097D473155875FFD561D6790"
)
_BOOT0000_HASH = bytes.fromhex(
    "23ADA07F5261F12F34A0BD8E46760962D6B4D576A416F1FEA1C64BC656B1D28E"
    "ACF7047AE6E967C58FD2A98BFA74C298"
)
_EFI_GLOBAL_VARIABLE = "8BE4DF61-93CA-11D2-AA0D-00E098032B8C"
_EFI_IMAGE_SECURITY_DATABASE = "D719B2CB-3D3A-4596-A3BC-DAD00E67656F"
_SEPARATOR = b"\x00\x00\x00\x00"

_HANDOFF_HOB = struct.Struct("<HHIIIQQQQQ")
_RESOURCE_HOB = struct.Struct("<HHI16sIIQQ")
_FIXED_RESOURCES = (
    (0x07, 0x0000000, 0x800000),
    (0x00, 0x0800000, 0x006000),
    (0x07, 0x0806000, 0x003000),
    (0x00, 0x0809000, 0x002000),
    (0x00, 0x080B000, 0x002000),
    (0x07, 0x080D000, 0x004000),
    (0x00, 0x0811000, 0x00F000),
)
_HIGH_MEMORY_START = 0x820000
_LOW_MEMORY_BELOW_SPLIT = 0x7F7E0000
_ABOVE_4G = 0x100000000


class MeasurementError(Exception):
    """Raised when a measurement cannot be computed from the given inputs."""


def measure_sha384(data: bytes) -> bytes:
    """Return the SHA-384 digest of a blob."""
    return hashlib.sha384(bytes(data)).digest()


def measure_kernel_cmdline(cmdline: str) -> bytes:
    """Measure a kernel command line as NUL-terminated UTF-16LE."""
    return measure_sha384((cmdline + "\x00").encode("utf-16-le"))


def measure_td_hob(memory_size: int, metadata: Optional[TdvfMetadata]) -> bytes:
    """Measure the TD HOB that QEMU builds for a TD of the given memory (MiB)."""
    base = metadata.td_hob_address() if metadata is not None else DEFAULT_TD_HOB_ADDRESS
    remaining = memory_size * 1024 * 1024

    resources = []

    def add(resource_type: int, start: int, length: int) -> None:
        nonlocal remaining
        resources.append(
            _RESOURCE_HOB.pack(0x03, _RESOURCE_HOB.size, 0, bytes(16),
                               resource_type, 0x07, start, length)
        )
        remaining = (remaining - length) & _U64

    for resource_type, start, length in _FIXED_RESOURCES:
        add(resource_type, start, length)
    if memory_size >= MEMORY_SPLIT_MB:
        add(0x07, _HIGH_MEMORY_START, _LOW_MEMORY_BELOW_SPLIT)
        add(0x07, _ABOVE_4G, remaining)
    else:
        add(0x07, _HIGH_MEMORY_START, remaining)

    total = _HANDOFF_HOB.size + sum(len(r) for r in resources)
    end_of_hob_list = (base + total + 8) & _U64
    handoff = _HANDOFF_HOB.pack(0x01, _HANDOFF_HOB.size, 0, 9, 0, 0, 0, 0, 0,
                                end_of_hob_list)
    return measure_sha384(handoff + b"".join(resources))


def measure_log(entries: Iterable[bytes]) -> bytes:
    """Replay an RTMR event log by extending a zeroed register with each entry."""
    register = bytes(DIGEST_SIZE)
    for index, entry in enumerate(entries, start=1):
        logger.debug("[%2d] %s", index, bytes(entry).hex())
        register = hashlib.sha384(register + bytes(entry)).digest()
    return register


def measure_efi_variable(vendor_guid: str, name: str) -> bytes:
    """Measure an EFI variable event for an absent variable."""
    encoded_name = name.encode("utf-8")
    data = (
        encode_guid(vendor_guid)
        + struct.pack("<QQ", len(encoded_name), 0)
        + name.encode("utf-16-le")
    )
    return measure_sha384(data)


def measure_acpi_tables(
    memory_size: int, cpu_count: int, templates: Mapping[str, str]
) -> tuple[bytes, bytes, bytes]:
    """Return the digests of the ACPI tables, the RSDP and the table loader."""
    try:
        generated = generate_tables_qemu(memory_size, cpu_count, templates)
    except AcpiError as exc:
        raise MeasurementError(f"failed to generate ACPI tables: {exc}") from exc
    return (
        measure_sha384(generated.tables),
        measure_sha384(generated.rsdp),
        measure_sha384(generated.loader),
    )


def _initrd_max(kd: bytearray, protocol: int) -> int:
    if protocol >= 0x20C:
        (xlf,) = struct.unpack_from("<H", kd, 0x236)
        return _U32 if xlf & _XLF_CAN_BE_LOADED_ABOVE_4G else _DEFAULT_INITRD_MAX
    if protocol >= 0x203:
        (value,) = struct.unpack_from("<I", kd, 0x22C)
        return value or _DEFAULT_INITRD_MAX
    return _DEFAULT_INITRD_MAX


def measure_kernel_image(
    kernel: bytes, initrd_size: int, memory_size: int, acpi_data_size: int
) -> bytes:
    """Measure a kernel image after applying the header patches QEMU makes."""
    if len(kernel) < MIN_KERNEL_LENGTH:
        raise MeasurementError(
            f"kernel data too short: need at least {MIN_KERNEL_LENGTH} bytes, "
            f"got {len(kernel)}"
        )
    memory_bytes = memory_size * 1024 * 1024
    kd = bytearray(kernel)
    (protocol,) = struct.unpack_from("<H", kd, 0x206)

    if protocol >= 0x202 and kd[0x211] & 0x01:
        real_addr, cmdline_addr = 0x10000, 0x20000
    else:
        real_addr, cmdline_addr = 0x90000, 0x9A000

    if protocol >= 0x200:
        kd[0x210] = 0xB0
    if protocol >= 0x201:
        kd[0x211] |= 0x80
        struct.pack_into("<I", kd, 0x224, cmdline_addr - real_addr - 0x200)
    if protocol >= 0x202:
        struct.pack_into("<I", kd, 0x228, cmdline_addr)
    else:
        struct.pack_into("<HH", kd, 0x20, 0xA33F, (cmdline_addr - real_addr) & 0xFFFF)

    if initrd_size > 0:
        if protocol < 0x200:
            raise MeasurementError(
                f"linux kernel too old to load a ram disk (protocol version 0x{protocol:x})"
            )
        initrd_max = _initrd_max(kd, protocol)
        low_memory = 0xB0000000 if memory_bytes < 0xB0000000 else 0x80000000
        below_4g = low_memory if memory_bytes >= low_memory else memory_bytes
        if initrd_max >= (below_4g - acpi_data_size) & _U32:
            initrd_max = (below_4g - acpi_data_size - 1) & _U32
        if initrd_size >= initrd_max:
            raise MeasurementError(
                f"initrd is too large (max: {initrd_max}, need: {initrd_size})"
            )
        initrd_addr = (initrd_max - initrd_size) & ~4095 & _U32
        struct.pack_into("<II", kd, 0x218, initrd_addr, initrd_size)

    try:
        return authenticode_hash(bytes(kd), "sha384")
    except PEFormatError as exc:
        raise MeasurementError(f"failed to parse PE file: {exc}") from exc


@dataclass(frozen=True)
class TdxMeasurements:
    """The MRTD and runtime measurement registers of a TD."""

    mrtd: bytes
    rtmr0: bytes
    rtmr1: bytes
    rtmr2: bytes

    def mr_aggregated(self, key_provider: str) -> str:
        """Return sha256(mrtd + rtmr0 + rtmr1 + rtmr2 + key_provider) as hex."""
        text = key_provider[2:] if key_provider.startswith("0x") else key_provider
        try:
            provider = binascii.unhexlify(text)
        except (binascii.Error, ValueError) as exc:
            raise MeasurementError(f"invalid mr_key_provider: {key_provider!r}") from exc
        return hashlib.sha256(
            self.mrtd + self.rtmr0 + self.rtmr1 + self.rtmr2 + provider
        ).hexdigest()

    def mr_image(self) -> str:
        """Return sha256(mrtd + rtmr1 + rtmr2) as hex."""
        return hashlib.sha256(self.mrtd + self.rtmr1 + self.rtmr2).hexdigest()


def measure_tdx_qemu(
    firmware: bytes,
    kernel: bytes,
    initrd: Optional[bytes],
    memory_size: int,
    cpu_count: int,
    cmdline: str,
    templates: Mapping[str, str],
) -> TdxMeasurements:
    """Compute all TD measurements for a QEMU launch of the given images."""
    initrd = bytes(initrd or b"")
    metadata = parse_tdvf_metadata(firmware)
    mrtd = metadata.compute_mrtd(firmware, MrtdVariant.TWO_PASS)

    tables_hash, rsdp_hash, loader_hash = measure_acpi_tables(
        memory_size, cpu_count, templates
    )
    rtmr0 = measure_log([
        measure_td_hob(memory_size, metadata),
        _CFV_IMAGE_HASH,
        measure_efi_variable(_EFI_GLOBAL_VARIABLE, "SecureBoot"),
        measure_efi_variable(_EFI_GLOBAL_VARIABLE, "PK"),
        measure_efi_variable(_EFI_GLOBAL_VARIABLE, "KEK"),
        measure_efi_variable(_EFI_IMAGE_SECURITY_DATABASE, "db"),
        measure_efi_variable(_EFI_IMAGE_SECURITY_DATABASE, "dbx"),
        measure_sha384(_SEPARATOR),
        loader_hash,
        rsdp_hash,
        tables_hash,
        measure_sha384(b"\x00\x00"),
        _BOOT0000_HASH,
    ])

    kernel_hash = measure_kernel_image(kernel, len(initrd), memory_size, ACPI_DATA_SIZE)
    rtmr1 = measure_log([
        kernel_hash,
        measure_sha384(b"Calling EFI Application from Boot Option"),
        measure_sha384(_SEPARATOR),
        measure_sha384(b"Exit Boot Services Invocation"),
        measure_sha384(b"Exit Boot Services Returned with Success"),
    ])

    rtmr2 = measure_log([measure_kernel_cmdline(cmdline), measure_sha384(initrd)])
    return TdxMeasurements(mrtd=mrtd, rtmr0=rtmr0, rtmr1=rtmr1, rtmr2=rtmr2)
"""Command line entry point: compute TDX measurements for a QEMU-launched TD."""

from __future__ import annotations

import argparse
import json
import os
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from .acpi import AcpiError, load_templates
from .authenticode import PEFormatError
from .measure import MeasurementError, TdxMeasurements, measure_tdx_qemu
from .tdvf import TdvfError

DEFAULT_KEY_PROVIDER = "0x" + "00" * 32
DEFAULT_MEMORY_MB = 2048
DEFAULT_TEMPLATES = Path(__file__).with_name("templates.json.gz")

KNOWN_KEY_PROVIDERS = {
    "sgx-v0": "0x4888adb026ff91c1320c4f544a9f5d9e0561e13fc64947a10aa1556d0071b2cc",
    "none": "0x3369c4d32b9f1320ebba5ce9892a283127b7e96e1d511d7f292e5d9ed2c10b8c",
}

_MB_PER_GB = 1024
_U64 = 0xFFFFFFFFFFFFFFFF
_METADATA_FIELDS = ("bios", "kernel", "cmdline", "initrd")


@dataclass(frozen=True)
class DStackMetadata:
    """Image description read from a metadata.json file."""

    bios: str = ""
    kernel: str = ""
    cmdline: str = ""
    initrd: str = ""


def parse_memory_size(size: str) -> int:
    """Parse a size such as "1G" or "512M" into megabytes."""
    size = size.upper().strip()
    if not size:
        raise ValueError("empty memory size")
    unit, number = size[-1], size[:-1]
    if not re.fullmatch(r"[0-9]+", number) or int(number) > _U64:
        raise ValueError(f"invalid memory size number: {number!r}")
    value = int(number)
    if unit == "G":
        return (value * _MB_PER_GB) & _U64
    if unit == "M":
        return value
    raise ValueError(f"invalid memory unit '{unit}', must be one of: G, M")


def format_memory_size(megabytes: int) -> str:
    """Format a size in megabytes the way it is written on the command line."""
    if megabytes >= _MB_PER_GB and megabytes % _MB_PER_GB == 0:
        return f"{megabytes // _MB_PER_GB}G"
    return f"{megabytes}M"


def resolve_key_provider(value: str) -> str:
    """Replace a known key-provider name by its measurement."""
    return KNOWN_KEY_PROVIDERS.get(value, value)


def load_metadata(path) -> DStackMetadata:
    """Read a metadata.json file describing the firmware, kernel and initrd."""
    data = json.loads(Path(path).read_bytes())
    if not isinstance(data, dict):
        raise ValueError("metadata must be a JSON object")
    fields = {}
    for name in _METADATA_FIELDS:
        value = data.get(name)
        if value is None:
            value = ""
        if not isinstance(value, str):
            raise ValueError(f"metadata field {name!r} must be a string")
        fields[name] = value
    return DStackMetadata(**fields)


def _memory_arg(value: str) -> int:
    try:
        return parse_memory_size(value)
    except ValueError as exc:
        raise argparse.ArgumentTypeError(str(exc)) from exc


def _cpu_arg(value: str) -> int:
    if not re.fullmatch(r"[0-9]+", value.strip()):
        raise argparse.ArgumentTypeError(f"invalid CPU count: {value!r}")
    return int(value)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="dstack-mr",
        description="Compute TDX measurement registers for a QEMU-launched TD.",
        allow_abbrev=False,
    )
    parser.add_argument("-fw", "--fw", default="", help="Path to firmware file")
    parser.add_argument("-kernel", "--kernel", default="", help="Path to kernel file")
    parser.add_argument("-initrd", "--initrd", default="", help="Path to initrd file")
    parser.add_argument(
        "-memory",
        "--memory",
        type=_memory_arg,
        default=DEFAULT_MEMORY_MB,
        help="Memory size (e.g., 512M, 1G, 2G) "
        f"(default {format_memory_size(DEFAULT_MEMORY_MB)})",
    )
    parser.add_argument("-cpu", "--cpu", type=_cpu_arg, default=1, help="Number of CPUs")
    parser.add_argument("-cmdline", "--cmdline", default="", help="Kernel command line")
    parser.add_argument(
        "-json", "--json", action="store_true", help="Output in JSON format"
    )
    parser.add_argument(
        "-metadata", "--metadata", default="", help="Path to DStack metadata.json file"
    )
    parser.add_argument(
        "-mrkp",
        "--mrkp",
        default=DEFAULT_KEY_PROVIDER,
        help="Measurement of key provider",
    )
    parser.add_argument(
        "-templates",
        "--templates",
        default=str(DEFAULT_TEMPLATES),
        help="Path to the ACPI table templates (JSON, optionally gzip-compressed)",
    )
    return parser


def _apply_metadata(args: argparse.Namespace, metadata: DStackMetadata, directory: str) -> None:
    if not args.fw:
        args.fw = os.path.join(directory, metadata.bios)
    if not args.kernel:
        args.kernel = os.path.join(directory, metadata.kernel)
    if not args.initrd and metadata.initrd:
        args.initrd = os.path.join(directory, metadata.initrd)
    if not args.cmdline:
        args.cmdline = metadata.cmdline
        if metadata.initrd:
            args.cmdline += " initrd=initrd"


def _report(measurements: TdxMeasurements, key_provider: str, as_json: bool) -> str:
    aggregated = measurements.mr_aggregated(key_provider)
    image = measurements.mr_image()
    if as_json:
        return json.dumps(
            {
                "mrtd": measurements.mrtd.hex(),
                "rtmr0": measurements.rtmr0.hex(),
                "rtmr1": measurements.rtmr1.hex(),
                "rtmr2": measurements.rtmr2.hex(),
                "mr_aggregated": aggregated,
                "mr_image": image,
            },
            indent=2,
        )
    return "\n".join(
        [
            f"MRTD: {measurements.mrtd.hex()}",
            f"RTMR0: {measurements.rtmr0.hex()}",
            f"RTMR1: {measurements.rtmr1.hex()}",
            f"RTMR2: {measurements.rtmr2.hex()}",
            f"MR_AGGREGATED: {aggregated}",
            f"MR_IMAGE: {image}",
        ]
    )


class _Failure(Exception):
    pass


def _read(path: str, label: str) -> bytes:
    try:
        return Path(path).read_bytes()
    except OSError as exc:
        raise _Failure(f"Error reading {label} file: {exc}") from exc


def _run(args: argparse.Namespace, parser: argparse.ArgumentParser) -> str:
    key_provider = resolve_key_provider(args.mrkp)

    if args.metadata:
        try:
            metadata = load_metadata(args.metadata)
        except OSError as exc:
            raise _Failure(f"Error reading metadata file: {exc}") from exc
        except ValueError as exc:
            raise _Failure(f"Error parsing metadata file: {exc}") from exc
        _apply_metadata(args, metadata, os.path.dirname(args.metadata))

    if not args.fw or not args.kernel:
        parser.print_usage(sys.stderr)
        raise _Failure(
            "Error: firmware and kernel paths are required "
            "(either directly or via metadata.json)"
        )

    firmware = _read(args.fw, "firmware")
    kernel = _read(args.kernel, "kernel")
    initrd = _read(args.initrd, "initrd") if args.initrd else b""

    try:
        templates = load_templates(args.templates)
    except (OSError, AcpiError) as exc:
        raise _Failure(f"Error reading ACPI templates: {exc}") from exc

    try:
        measurements = measure_tdx_qemu(
            firmware,
            kernel,
            initrd,
            args.memory,
            args.cpu & 0xFF,
            args.cmdline,
            templates,
        )
    except (TdvfError, MeasurementError, AcpiError, PEFormatError) as exc:
        raise _Failure(f"Error calculating measurements: {exc}") from exc

    try:
        return _report(measurements, key_provider, args.json)
    except MeasurementError as exc:
        raise _Failure(f"Error: {exc}") from exc


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Run the command; return the process exit status."""
    parser = _build_parser()
    args = parser.parse_args(argv)
    try:
        output = _run(args, parser)
    except _Failure as exc:
        print(exc)
        return 1
    print(output)
    return 0


if __name__ == "__main__":
    sys.exit(main())
# dstack-mr

Compute, ahead of time, the Intel TDX measurement registers that a dstack
guest will report when it is started by QEMU: `MRTD`, `RTMR0`, `RTMR1` and
`RTMR2`, together with the derived `mr_aggregated` and `mr_image` digests.

The values are reproduced offline from the guest's firmware (TDVF/OVMF),
kernel, initrd, kernel command line, memory size and CPU count, plus a file of
ACPI table templates. They can then be compared with the values in a TDX quote
to decide whether a remote guest runs the expected image.

## What is measured

* **MRTD** — every firmware page added to the trust domain, and the contents
  of the sections flagged for extension, as described by the TDVF metadata
  table embedded in the firmware (two-pass page order).
* **RTMR0** — the TD HOB built for the configured memory size, the firmware
  configuration volume, the Secure Boot variables (`SecureBoot`, `PK`, `KEK`,
  `db`, `dbx`), a separator, the ACPI table-loader commands, the RSDP, the
  ACPI tables, `BootOrder` and `Boot0000`.
* **RTMR1** — the Authenticode SHA-384 digest of the kernel image as patched
  the way QEMU patches it (loader type, heap and command-line pointers, initrd
  placement), followed by the boot-service events.
* **RTMR2** — the kernel command line (UTF-16LE, NUL-terminated) and the
  SHA-384 of the initrd (of empty data when there is none).
* **mr_aggregated** — SHA-256 over `MRTD ‖ RTMR0 ‖ RTMR1 ‖ RTMR2 ‖ key provider`.
* **mr_image** — SHA-256 over `MRTD ‖ RTMR1 ‖ RTMR2`.

## Installation

```
pip install .
```

The package has no runtime dependencies beyond the Python standard library
(Python 3.10 or later).

## ACPI table templates

RTMR0 depends on the ACPI tables QEMU generates, which are built from a
template per CPU count. The templates are **not shipped with this package**;
you supply them with `--templates` (or to `load_templates`). The file is a
JSON object mapping the CPU count, as a string, to the hex-encoded table blob,
for example `{"1": "44534454...", "2": "..."}`. It may be gzip-compressed;
compression is detected from the file's contents.

Without `--templates` the command looks for `templates.json.gz` beside the
`dstack_mr.cli` module, which a plain install does not contain.

## Command line

```
dstack-mr --fw OVMF.fd --kernel bzImage --initrd initramfs.cpio.gz \
          --cmdline "console=ttyS0 initrd=initrd" \
          --memory 2G --cpu 1 --templates templates.json.gz
```

Every option can also be written with a single dash (`-fw`, `-memory`, …).

| Option        | Meaning                                                          | Default   |
|---------------|------------------------------------------------------------------|-----------|
| `--fw`        | Path to the firmware file                                        |           |
| `--kernel`    | Path to the kernel image                                         |           |
| `--initrd`    | Path to the initrd (optional)                                    |           |
| `--memory`    | Guest memory: a whole number followed by `M` or `G` (any case)   | `2G`      |
| `--cpu`       | Number of virtual CPUs                                           | `1`       |
| `--cmdline`   | Kernel command line                                              | empty     |
| `--metadata`  | Path to a dstack `metadata.json` describing the image            |           |
| `--mrkp`      | Key-provider measurement in hex (`0x` optional), or `sgx-v0` / `none` | all zero |
| `--templates` | ACPI table templates (see above)                                 | `templates.json.gz` beside the module |
| `--json`      | Print the result as JSON                                         | off       |

The named key providers `sgx-v0` and `none` are replaced by their known
measurements before `mr_aggregated` is computed. The CPU count is taken modulo
256.

### Using an image's metadata.json

A dstack image directory carries a `metadata.json` with the keys `bios`,
`kernel`, `cmdline` and `initrd` (missing keys count as empty). Paths in it
are relative to the file. Anything not given on the command line is taken from
it; when the image has an initrd and no `--cmdline` was given, ` initrd=initrd`
is appended to the metadata's command line.

```
dstack-mr --metadata images/dstack-0.3.5/metadata.json --memory 4G --cpu 2 \
          --templates templates.json.gz --json
```

Plain output:

```
MRTD: ...
RTMR0: ...
RTMR1: ...
RTMR2: ...
MR_AGGREGATED: ...
MR_IMAGE: ...
```

With `--json`:

```json
{
  "mrtd": "...",
  "rtmr0": "...",
  "rtmr1": "...",
  "rtmr2": "...",
  "mr_aggregated": "...",
  "mr_image": "..."
}
```

Errors (unreadable files, malformed metadata or templates, malformed firmware,
a kernel too old for an initrd, an initrd that does not fit, no ACPI template
for the CPU count, an invalid key provider) are printed on standard output and
the command exits with status 1. A missing firmware or kernel path also prints
the usage line on standard error. Invalid option values such as `--memory 2T`
are rejected by the argument parser with status 2.

## Library use

```python
from pathlib import Path

from dstack_mr.acpi import load_templates
from dstack_mr.measure import measure_tdx_qemu

templates = load_templates("templates.json.gz")
measurements = measure_tdx_qemu(
    Path("OVMF.fd").read_bytes(),
    Path("bzImage").read_bytes(),
    Path("initramfs.cpio.gz").read_bytes(),
    2048,                       # memory size in MiB
    1,                          # CPU count
    "console=ttyS0 initrd=initrd",
    templates,
)

print(measurements.mrtd.hex())
print(measurements.mr_image())
print(measurements.mr_aggregated("0x" + "00" * 32))
```

`measure_tdx_qemu` returns a frozen `TdxMeasurements` with the byte fields
`mrtd`, `rtmr0`, `rtmr1` and `rtmr2`.

The building blocks are available on their own:

* `dstack_mr.tdvf` — `parse_tdvf_metadata` returning `TdvfMetadata` (a tuple
  of `TdvfSection`), `TdvfMetadata.compute_mrtd` with `MrtdVariant.TWO_PASS`
  or `MrtdVariant.SINGLE_PASS`, `TdvfMetadata.td_hob_address`, and
  `encode_guid`. Errors raise `TdvfError`.
* `dstack_mr.acpi` — `load_templates`, `generate_tables_qemu` (returning
  `AcpiTables` with `tables`, `rsdp` and `loader`), `find_acpi_table`
  (returning `AcpiTable`), and the table-loader commands `LoaderAllocate`,
  `LoaderAddPointer`, `LoaderAddChecksum` with `build_loader`. Errors raise
  `AcpiError`.
* `dstack_mr.authenticode` — `authenticode_hash(image, algorithm="sha384")`
  for PE/COFF images; malformed images raise `PEFormatError`.
* `dstack_mr.measure` — the individual event digests (`measure_sha384`,
  `measure_td_hob`, `measure_efi_variable`, `measure_kernel_cmdline`,
  `measure_kernel_image`, `measure_acpi_tables`) and `measure_log`, which
  replays an event log into a register value. Errors raise
  `MeasurementError`. Each replayed log entry is logged at debug level on the
  `dstack_mr.measure` logger.

## Running the tests

```
pip install ".[test]"
pytest
```
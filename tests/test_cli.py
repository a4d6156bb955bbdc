import json
import struct

import pytest

from dstack_mr.cli import (
    DEFAULT_KEY_PROVIDER,
    DStackMetadata,
    format_memory_size,
    load_metadata,
    main,
    parse_memory_size,
    resolve_key_provider,
)
from dstack_mr.measure import measure_tdx_qemu
from dstack_mr.tdvf import TABLE_FOOTER_GUID, TDX_METADATA_OFFSET_GUID, encode_guid

SGX_V0 = "0x4888adb026ff91c1320c4f544a9f5d9e0561e13fc64947a10aa1556d0071b2cc"
NONE_PROVIDER = "0x3369c4d32b9f1320ebba5ce9892a283127b7e96e1d511d7f292e5d9ed2c10b8c"


def _firmware() -> bytes:
    page = bytes(range(256)) * 16
    section = struct.pack("<IIQQII", 0, 0x1000, 0x800000, 0x1000, 0x02, 0x1)
    descriptor = struct.pack("<4sIII", b"TDVF", 48, 1, 1) + section
    body = page + descriptor
    tail_length = 22 + 2 + 16 + 32
    distance = len(body) + tail_length - len(page)
    entry = (
        struct.pack("<I", distance)
        + struct.pack("<H", 4)
        + encode_guid(TDX_METADATA_OFFSET_GUID)
    )
    footer = struct.pack("<H", len(entry)) + encode_guid(TABLE_FOOTER_GUID) + bytes(32)
    return body + entry + footer


def _kernel() -> bytes:
    kd = bytearray(0x1000)
    kd[0:2] = b"MZ"
    struct.pack_into("<I", kd, 0x3C, 0x80)
    kd[0x80:0x84] = b"PE\x00\x00"
    struct.pack_into("<HHIIIHH", kd, 0x84, 0x8664, 0, 0, 0, 0, 112, 0)
    struct.pack_into("<H", kd, 0x98, 0x20B)
    struct.pack_into("<I", kd, 0x98 + 60, 0x200)
    struct.pack_into("<H", kd, 0x206, 0x20F)
    kd[0x211] = 0x01
    return bytes(kd)


def _templates() -> dict:
    def table(signature: bytes, length: int) -> bytes:
        return signature + struct.pack("<I", length) + bytes(length - 8)

    blob = (
        table(b"DSDT", 0x300)
        + table(b"FACP", 0x100)
        + table(b"APIC", 64)
        + table(b"MCFG", 64)
        + table(b"WAET", 40)
        + table(b"RSDT", 52)
    )
    return {"1": blob.hex()}


@pytest.fixture
def images(tmp_path):
    paths = {
        "fw": tmp_path / "bios.bin",
        "kernel": tmp_path / "bzImage",
        "initrd": tmp_path / "initrd.img",
        "templates": tmp_path / "templates.json",
    }
    paths["fw"].write_bytes(_firmware())
    paths["kernel"].write_bytes(_kernel())
    paths["initrd"].write_bytes(b"initrd contents" * 10)
    paths["templates"].write_text(json.dumps(_templates()))
    return paths


def _expected(images, cmdline, memory=1024, initrd=True):
    return measure_tdx_qemu(
        images["fw"].read_bytes(),
        images["kernel"].read_bytes(),
        images["initrd"].read_bytes() if initrd else b"",
        memory,
        1,
        cmdline,
        _templates(),
    )


def test_parse_memory_size_units():
    assert parse_memory_size("512M") == 512
    assert parse_memory_size("2G") == parse_memory_size("2048M")
    assert parse_memory_size(" 2g ") == parse_memory_size("2G")
    assert parse_memory_size("1g") == 1024


@pytest.mark.parametrize("text", ["", "   ", "G", "1T", "-1G", "+1G", "1.5G", "12"])
def test_parse_memory_size_rejects(text):
    with pytest.raises(ValueError):
        parse_memory_size(text)


@pytest.mark.parametrize("megabytes", [0, 1, 512, 1024, 1536, 2048, 4096, 3000])
def test_format_memory_size_round_trip(megabytes):
    assert parse_memory_size(format_memory_size(megabytes)) == megabytes


def test_format_memory_size_prefers_gigabytes():
    assert format_memory_size(2048) == "2G"
    assert format_memory_size(1536).endswith("M")


def test_resolve_key_provider():
    assert resolve_key_provider("sgx-v0") == SGX_V0
    assert resolve_key_provider("none") == NONE_PROVIDER
    assert resolve_key_provider("0xabcd") == "0xabcd"


def test_load_metadata(tmp_path):
    path = tmp_path / "metadata.json"
    path.write_text(json.dumps({"bios": "ovmf.fd", "kernel": "bzImage", "cmdline": "quiet"}))
    assert load_metadata(path) == DStackMetadata(
        bios="ovmf.fd", kernel="bzImage", cmdline="quiet", initrd=""
    )


def test_load_metadata_rejects_bad_input(tmp_path):
    bad_type = tmp_path / "bad_type.json"
    bad_type.write_text(json.dumps({"bios": 3}))
    with pytest.raises(ValueError):
        load_metadata(bad_type)
    bad_json = tmp_path / "bad.json"
    bad_json.write_text("{not json")
    with pytest.raises(ValueError):
        load_metadata(bad_json)
    not_object = tmp_path / "list.json"
    not_object.write_text("[]")
    with pytest.raises(ValueError):
        load_metadata(not_object)


def test_main_json_output(images, capsys):
    status = main([
        "-fw", str(images["fw"]),
        "-kernel", str(images["kernel"]),
        "-initrd", str(images["initrd"]),
        "-memory", "1G",
        "-cpu", "1",
        "-cmdline", "console=ttyS0",
        "-templates", str(images["templates"]),
        "-json",
    ])
    assert status == 0
    output = json.loads(capsys.readouterr().out)
    expected = _expected(images, "console=ttyS0")
    assert list(output) == ["mrtd", "rtmr0", "rtmr1", "rtmr2", "mr_aggregated", "mr_image"]
    assert output["mrtd"] == expected.mrtd.hex()
    assert output["rtmr0"] == expected.rtmr0.hex()
    assert output["rtmr1"] == expected.rtmr1.hex()
    assert output["rtmr2"] == expected.rtmr2.hex()
    assert output["mr_image"] == expected.mr_image()
    assert output["mr_aggregated"] == expected.mr_aggregated(DEFAULT_KEY_PROVIDER)


def test_main_text_output_with_known_key_provider(images, capsys):
    status = main([
        "--fw", str(images["fw"]),
        "--kernel", str(images["kernel"]),
        "--memory", "1G",
        "--templates", str(images["templates"]),
        "--mrkp", "none",
    ])
    assert status == 0
    lines = capsys.readouterr().out.splitlines()
    expected = _expected(images, "", initrd=False)
    assert lines == [
        f"MRTD: {expected.mrtd.hex()}",
        f"RTMR0: {expected.rtmr0.hex()}",
        f"RTMR1: {expected.rtmr1.hex()}",
        f"RTMR2: {expected.rtmr2.hex()}",
        f"MR_AGGREGATED: {expected.mr_aggregated(NONE_PROVIDER)}",
        f"MR_IMAGE: {expected.mr_image()}",
    ]


def test_main_uses_metadata(images, tmp_path, capsys):
    metadata = tmp_path / "metadata.json"
    metadata.write_text(json.dumps({
        "bios": images["fw"].name,
        "kernel": images["kernel"].name,
        "initrd": images["initrd"].name,
        "cmdline": "console=ttyS0",
    }))
    status = main([
        "-metadata", str(metadata),
        "-memory", "1G",
        "-templates", str(images["templates"]),
        "-json",
    ])
    assert status == 0
    output = json.loads(capsys.readouterr().out)
    expected = _expected(images, "console=ttyS0 initrd=initrd")
    assert output["rtmr2"] == expected.rtmr2.hex()
    assert output["mr_image"] == expected.mr_image()


def test_explicit_cmdline_overrides_metadata(images, tmp_path, capsys):
    metadata = tmp_path / "metadata.json"
    metadata.write_text(json.dumps({
        "bios": images["fw"].name,
        "kernel": images["kernel"].name,
        "initrd": images["initrd"].name,
        "cmdline": "ignored",
    }))
    status = main([
        "-metadata", str(metadata),
        "-memory", "1G",
        "-cmdline", "quiet",
        "-templates", str(images["templates"]),
        "-json",
    ])
    assert status == 0
    output = json.loads(capsys.readouterr().out)
    assert output["rtmr2"] == _expected(images, "quiet").rtmr2.hex()


def test_main_requires_firmware_and_kernel(capsys):
    assert main([]) == 1
    assert "firmware and kernel paths are required" in capsys.readouterr().out


def test_main_reports_missing_firmware(tmp_path, capsys):
    status = main(["-fw", str(tmp_path / "missing"), "-kernel", str(tmp_path / "k")])
    assert status == 1
    assert capsys.readouterr().out.startswith("Error reading firmware file:")


def test_main_reports_bad_metadata(tmp_path, capsys):
    metadata = tmp_path / "metadata.json"
    metadata.write_text("{oops")
    assert main(["-metadata", str(metadata)]) == 1
    assert capsys.readouterr().out.startswith("Error parsing metadata file:")


def test_main_reports_unknown_cpu_template(images, capsys):
    status = main([
        "-fw", str(images["fw"]),
        "-kernel", str(images["kernel"]),
        "-cpu", "7",
        "-templates", str(images["templates"]),
    ])
    assert status == 1
    assert capsys.readouterr().out.startswith("Error calculating measurements:")


def test_main_reports_invalid_key_provider(images, capsys):
    status = main([
        "-fw", str(images["fw"]),
        "-kernel", str(images["kernel"]),
        "-memory", "1G",
        "-templates", str(images["templates"]),
        "-mrkp", "0xnothex",
    ])
    assert status == 1
    assert "mr_key_provider" in capsys.readouterr().out


def test_main_rejects_bad_memory_flag():
    with pytest.raises(SystemExit) as info:
        main(["-memory", "5T"])
    assert info.value.code == 2
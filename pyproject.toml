[build-system]
requires = ["hatchling"]
build-backend = "hatchling.build"

[project]
name = "dstack-mr"
version = "0.1.0"
description = "Compute the expected Intel TDX measurement registers (MRTD, RTMR0-2) of a QEMU-launched dstack guest"
requires-python = ">=3.10"
dependencies = []
keywords = [
    "tdx",
    "tee",
    "attestation",
    "measurement",
    "mrtd",
    "rtmr",
    "qemu",
    "tdvf",
    "ovmf",
    "acpi",
    "authenticode",
]
classifiers = [
    "Development Status :: 4 - Beta",
    "Environment :: Console",
    "Intended Audience :: Developers",
    "Intended Audience :: System Administrators",
    "Operating System :: OS Independent",
    "Programming Language :: Python :: 3",
    "Programming Language :: Python :: 3 :: Only",
    "Programming Language :: Python :: 3.10",
    "Programming Language :: Python :: 3.11",
    "Programming Language :: Python :: 3.12",
    "Programming Language :: Python :: 3.13",
    "Topic :: Security :: Cryptography",
    "Topic :: System :: Emulators",
]

[project.optional-dependencies]
test = ["pytest"]

[project.scripts]
dstack-mr = "dstack_mr.cli:main"

[tool.hatch.build.targets.wheel]
packages = ["dstack_mr"]

[tool.hatch.build.targets.sdist]
include = ["dstack_mr", "tests", "pyproject.toml"]

[tool.pytest.ini_options]
addopts = "-ra"
testpaths = ["tests"]

[tool.ruff]
line-length = 100
target-version = "py310"

[tool.ruff.lint]
select = ["E", "F", "W", "I", "B", "UP", "SIM"]

[tool.mypy]
python_version = "3.10"
warn_unused_ignores = true
warn_unreachable = true

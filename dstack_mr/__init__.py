"""Offline computation of Intel TDX measurement registers (MRTD, RTMR0-2) for QEMU-launched dstack guests."""

__version__ = "0.1.0"

__all__ = ["__version__"]
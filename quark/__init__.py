"""Quark - build bootable quardle archives for micro-VMs.

This package assembles a kernel, an initramfs embedding the kaps runtime,
an optional container bundle and a quark.json manifest into a single
`.qrk` archive, and unpacks such archives on the host.
"""

__version__ = "0.1.0"
__all__ = ["__version__"]

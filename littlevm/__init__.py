"""Build VM images and kernels and run them with QEMU."""

__version__ = "0.1.0"
"""LiveOS ISO builder.

Core design goals:
- Full disk image in, bootable read-only LiveOS ISO out
- Re-customizable: an ISO carries the options it was built with
- Optional PXE artifacts next to the ISO
- Every mount, loop device and scratch dir released on every path
- Centralized logging
"""

__all__ = []

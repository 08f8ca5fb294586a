"""
fortress - Resumable full-disk-encrypted Void Linux installer

This package provides tools for installing Void Linux on a single disk with
LUKS encrypted root and home volumes, resuming correctly after an
interruption at any point.
"""

__version__ = "0.1.0"

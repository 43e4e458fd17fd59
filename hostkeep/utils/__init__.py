"""Utilities for hostkeep."""

from .files import ChecksumManifest, sha256_file
from .logging import setup_logging

__all__ = ["ChecksumManifest", "sha256_file", "setup_logging"]

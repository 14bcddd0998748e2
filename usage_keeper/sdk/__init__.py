"""
SDK for usage-keeper.

Provides programmatic access to the upstream ccusage CLI.
"""

from .ccusage_client import CcusageClient, RawSnapshot

__all__ = ["CcusageClient", "RawSnapshot"]

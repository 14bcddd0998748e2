"""
Core modules for usage-keeper.

This package contains snapshot normalization, merging, time windows,
analytics, archival, export, and run coordination.
"""

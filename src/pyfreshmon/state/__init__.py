"""State/store layer.

This package is the single source of truth for the live view of the storage
unit: the merged sensor snapshot, the latest classification codes, and the
per-device memory of the last persisted code used for change-gating.
"""

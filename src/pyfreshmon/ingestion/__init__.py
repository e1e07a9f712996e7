"""Ingestion layer.

This package contains the pieces that turn raw transport deliveries (bus
payload bytes, serial text lines) into typed messages for the engine.
"""

__all__: list[str] = []

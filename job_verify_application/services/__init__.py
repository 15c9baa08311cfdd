"""Shared services: stores, throttling, resilient HTTP, data store access and telemetry."""

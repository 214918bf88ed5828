"""Shared infrastructure: settings, logging, errors, storage, cache, clock and telemetry."""

"""Sensor frame types, per-model unpackers and log access."""

"""Geometry transforms (numpy)."""

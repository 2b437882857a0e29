"""Prometheus exporter for Traewelling check-in statistics."""

__version__ = "0.1.0"

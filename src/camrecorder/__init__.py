"""Cam Recorder - watch cam performers, record live streams, publish uploads."""

__version__ = "1.0.0"

"""Refresh-token issuance, rotation and session tracking on top of short-lived JWTs."""

__version__ = "1.0.0"

"""Invow backend: subscription entitlements and invoice quota enforcement."""

__version__ = "0.1.0"

"""Paystack-driven license issuing, activation and validation service."""

__version__ = "1.0.0"

"""Multi-tenant notification storage and delivery service."""

__version__ = "1.0.0"

"""Multi-tenant recurring schedule engine."""

__version__ = "0.1.0"

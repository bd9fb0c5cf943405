"""CashHeros edge pipeline and offline-capable client cache."""

__version__ = "0.1.0"

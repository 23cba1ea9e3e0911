"""Real-time market-data synchronization core for Polymarket."""

__version__ = "0.1.0"

"""Two-way record synchronisation between a local replica and a remote record store."""

__version__ = "0.3.0"

"""Sharded key-value and file storage with an HTTP API, a client and the dqmpctl tool."""

__version__ = "0.1.0"
"""End-to-end encrypted messaging core with chunked relay transport."""

__version__ = "0.1.0"

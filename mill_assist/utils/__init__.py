"""Shared helpers: logging setup and atomic file I/O."""

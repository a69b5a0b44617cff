"""Command-line entry points for compiling jobs and replaying sessions."""

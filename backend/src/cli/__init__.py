"""Command-line presentation layer for the bookmark session."""

"""Command-line interface for Convoy."""

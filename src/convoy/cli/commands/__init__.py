"""Convoy CLI commands."""

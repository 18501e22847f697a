"""Shared utilities for Convoy."""

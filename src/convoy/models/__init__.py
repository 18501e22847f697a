"""Pydantic models for Convoy configuration, state and providers."""

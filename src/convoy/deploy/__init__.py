"""Deployment planning, rollout, state and provisioning flows."""

"""Convoy - Declarative server provisioning and container rollout.

Convoy reads a desired-state YAML file describing servers, container
services and provisioning scripts, and converges real infrastructure toward
it.

Main features:
- Dependency-ordered service rollout with health-gated rollback
- Retry with exponential backoff and error classification
- Local JSON state cache with drift detection
- Idempotent provisioning scripts and lifecycle hooks
- Provider preflight validation before any mutation
"""

from convoy.config.loader import ConfigLoader
from convoy.lib.errors import ConfigError, ConvoyError

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "ConfigLoader",
    "ConfigError",
    "ConvoyError",
]

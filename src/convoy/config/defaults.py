"""Default values and templates for Convoy."""

from pathlib import Path

DEFAULT_CONFIG_FILENAME = "convoy.yaml"
DEFAULT_STATE_DIR = Path.home() / ".convoy" / "state"

# Retry policy for server creation and service deploys
SERVER_CREATE_ATTEMPTS = 3
SERVER_CREATE_DELAY = 0.3  # seconds
SERVICE_DEPLOY_ATTEMPTS = 3
SERVICE_DEPLOY_DELAY = 0.25  # seconds

# Healthcheck defaults
HEALTHCHECK_DEFAULTS: dict[str, int | str] = {
    "retries": 10,
    "interval_secs": 5,
    "probe_timeout_secs": 5,
    "http_path": "/health",
    "http_expected_status": 200,
}

# Lines shown by `convoy logs` when --tail is not given
DEFAULT_LOG_TAIL = 100

# Container removal polling after `docker rm -f`
CONTAINER_REMOVE_POLL_ATTEMPTS = 20
CONTAINER_REMOVE_POLL_INTERVAL = 0.2  # seconds

# Scripts
DEFAULT_SCRIPT_SHELL = "bash"
SCRIPT_RETRY_DELAY = 1.0  # seconds between script attempts
REMOTE_USER = "root"

EXAMPLE_CONFIG = """\
project:
  name: my-project
  description: Example Convoy project
  deploy_mode: remote

infra:
  servers:
    - name: web-server
      provider: hetzner
      region: nbg1
      server_type: cx22
      ssh_key: ~/.ssh/id_ed25519.pub
      floating_ip: false

services:
  database:
    image: postgres:16
    ports: [5432]
    env:
      POSTGRES_DB: myapp
      POSTGRES_USER: app
      POSTGRES_PASSWORD: ${POSTGRES_PASSWORD:-change-me}
    volumes:
      - /srv/postgres:/var/lib/postgresql/data
    healthcheck:
      command: ["pg_isready", "-U", "app"]
      interval_secs: 3
      retries: 20

  api:
    image: nginx:latest
    ports: [80]
    depends_on: [database]
    healthcheck:
      http:
        path: /
        expected_status: 200

scripts:
  bootstrap:
    target: all
    file: scripts/bootstrap.sh
    idempotency: once

hooks:
  post_provision: [bootstrap]
"""

"""Container runtimes and shell transports."""

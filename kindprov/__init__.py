"""Docker-backed node provider for local Kubernetes clusters."""

__version__ = "0.1.0"
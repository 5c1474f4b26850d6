"""Decision core for managing Talos / Kubernetes cluster nodes."""

__version__ = "0.1.0"

"""CFS CSI controller: subpath provisioner and sidecar admission webhook."""

__version__ = "0.1.0"

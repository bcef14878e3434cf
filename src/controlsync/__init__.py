"""controlsync: declarative reconciliation against the control plane API."""

__version__ = "0.1.0"

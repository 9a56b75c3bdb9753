"""Session Hub sidecar agent."""

__version__ = "3.0.0"

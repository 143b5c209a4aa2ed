"""profilesync - Offline-first sync and merge engine for SSH client data."""

__version__ = "0.1.0"

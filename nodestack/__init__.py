"""Node stack installer: profile resolution, resumable installs, sync monitoring."""

__version__ = "0.1.0"

"""Publish and retire pull-request previews on a shared publishing branch."""

__version__ = "0.1.0"

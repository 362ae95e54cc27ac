"""Kubernetes operator for Nginx custom resources."""

from nginx_operator._version import __version__

__all__ = ["__version__"]

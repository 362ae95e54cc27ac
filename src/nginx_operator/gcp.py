"""
Global IPv6 address reservation for GCP load balancers
"""

import logging
from typing import Protocol

from nginx_operator.exceptions import IPv6AllocationError

logger = logging.getLogger(__name__)


class IPv6Allocator(Protocol):
    def ensure_ipv6(self, name: str) -> None:
        """Reserve a global IPv6 address called name. Must be idempotent."""
        ...


class UnconfiguredIPv6Allocator:
    """Allocator used when no cloud client has been wired in."""

    def __init__(self, project: str = "") -> None:
        self.project = project

    def ensure_ipv6(self, name: str) -> None:
        logger.error("Cannot reserve IPv6 address %s: no GCP client configured", name)
        raise IPv6AllocationError(
            f"no IPv6 allocator configured for project {self.project or '<unset>'}",
            resource=name,
        )

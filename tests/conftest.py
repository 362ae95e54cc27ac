"""Test configuration and fixtures."""

import json
from collections.abc import Callable
from typing import Any
from unittest.mock import MagicMock

import pytest
from kubernetes.client.rest import ApiException

from nginx_operator.k8s import KubeClients
from nginx_operator.models import Nginx


@pytest.fixture
def clients() -> KubeClients:
    """Kubernetes API clients backed by mocks."""
    return KubeClients(
        core=MagicMock(),
        apps=MagicMock(),
        networking=MagicMock(),
        custom=MagicMock(),
    )


@pytest.fixture
def recorder() -> MagicMock:
    """Event recorder that only remembers calls."""
    return MagicMock()


@pytest.fixture
def make_nginx() -> Callable[..., Nginx]:
    """Factory for Nginx resources with sensible metadata."""

    def factory(
        spec: dict[str, Any] | None = None,
        name: str = "my-nginx",
        namespace: str = "default",
        annotations: dict[str, str] | None = None,
        status: dict[str, Any] | None = None,
    ) -> Nginx:
        return Nginx.from_body(
            {
                "apiVersion": "nginx.tsuru.io/v1alpha1",
                "kind": "Nginx",
                "metadata": {
                    "name": name,
                    "namespace": namespace,
                    "uid": "0b5c4a7e-1111-2222-3333-444455556666",
                    "resourceVersion": "100",
                    "annotations": annotations or {},
                },
                "spec": spec or {},
                "status": status or {},
            }
        )

    return factory


def api_error(status: int, reason: str = "", message: str = "") -> ApiException:
    """Build an ApiException shaped like an API server Status response."""
    error = ApiException(status=status, reason=reason)
    error.body = json.dumps({"kind": "Status", "reason": reason, "message": message})
    return error


@pytest.fixture
def not_found() -> ApiException:
    return api_error(404, "NotFound", "not found")

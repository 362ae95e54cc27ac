"""
Kubernetes event recording
"""

import logging
from typing import Any, Protocol

import kopf
from kubernetes.client.models import V1ObjectMeta

from nginx_operator.k8s import API_VERSION, KIND
from nginx_operator.models import Nginx

logger = logging.getLogger(__name__)


class EventRecorder(Protocol):
    def normal(self, obj: dict[str, Any], reason: str, message: str) -> None: ...

    def warning(self, obj: dict[str, Any], reason: str, message: str) -> None: ...


class KopfEventRecorder:
    """Post events through kopf's event queue."""

    def normal(self, obj: dict[str, Any], reason: str, message: str) -> None:
        logger.debug("Event %s on %s: %s", reason, obj["metadata"].get("name"), message)
        kopf.info(obj, reason=reason, message=message)

    def warning(self, obj: dict[str, Any], reason: str, message: str) -> None:
        logger.warning("Event %s on %s: %s", reason, obj["metadata"].get("name"), message)
        kopf.warn(obj, reason=reason, message=message)


def nginx_ref(nginx: Nginx) -> dict[str, Any]:
    """Event target for an Nginx resource."""
    return {
        "apiVersion": API_VERSION,
        "kind": KIND,
        "metadata": {
            "name": nginx.name,
            "namespace": nginx.namespace,
            "uid": nginx.metadata.uid,
        },
    }


def object_ref(api_version: str, kind: str, meta: V1ObjectMeta) -> dict[str, Any]:
    """Event target for an object read through the kubernetes client."""
    return {
        "apiVersion": api_version,
        "kind": kind,
        "metadata": {"name": meta.name, "namespace": meta.namespace, "uid": meta.uid},
    }

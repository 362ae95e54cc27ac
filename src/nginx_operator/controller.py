"""
Reconcile orchestration for Nginx resources
"""

import logging
import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from enum import Enum

from kubernetes.client.rest import ApiException
from pydantic import ValidationError

from nginx_operator.annotation_filter import parse_selector, should_manage
from nginx_operator.config import OperatorConfig
from nginx_operator.events import EventRecorder, nginx_ref
from nginx_operator.exceptions import NginxOperatorError
from nginx_operator.gcp import IPv6Allocator
from nginx_operator.k8s import (
    API_VERSION,
    GROUP,
    KIND,
    PLURAL,
    VERSION,
    KubeClients,
    api_error_message,
    is_not_found,
)
from nginx_operator.merger import (
    DeploymentReconciler,
    IngressReconciler,
    IPv6IngressReconciler,
    OwnedObjectReconciler,
    ServiceReconciler,
)
from nginx_operator.models import Nginx
from nginx_operator.status import StatusAggregator

logger = logging.getLogger(__name__)


class OwnedKind(Enum):
    """Objects converged for every Nginx, in reconcile order."""

    DEPLOYMENT = "Deployment"
    SERVICE = "Service"
    INGRESS = "Ingress"
    IPV6_INGRESS = "IPv6Ingress"


@dataclass
class ReconcileResult:
    requeue_after: int | None = None
    changed: list[OwnedKind] = field(default_factory=list)
    status_updated: bool = False


class KeyedLock:
    """One lock per key, so a given Nginx is reconciled by one worker at a time."""

    def __init__(self) -> None:
        self._guard = threading.Lock()
        self._locks: dict[str, threading.Lock] = {}
        self._users: dict[str, int] = {}

    @contextmanager
    def hold(self, key: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.setdefault(key, threading.Lock())
            self._users[key] = self._users.get(key, 0) + 1
        try:
            with lock:
                yield
        finally:
            with self._guard:
                self._users[key] -= 1
                if not self._users[key]:
                    del self._users[key]
                    del self._locks[key]


class NginxController:
    """Drives Deployment, Service and Ingress convergence and the status refresh."""

    def __init__(
        self,
        clients: KubeClients,
        recorder: EventRecorder,
        config: OperatorConfig,
        ipv6_allocator: IPv6Allocator,
    ) -> None:
        self.clients = clients
        self.recorder = recorder
        self.config = config
        self.selector = parse_selector(config.annotation_filter)
        self.reconcilers: dict[OwnedKind, OwnedObjectReconciler] = {
            OwnedKind.DEPLOYMENT: DeploymentReconciler(clients, recorder),
            OwnedKind.SERVICE: ServiceReconciler(clients, recorder),
            OwnedKind.INGRESS: IngressReconciler(clients, recorder),
            OwnedKind.IPV6_INGRESS: IPv6IngressReconciler(clients, recorder, ipv6_allocator),
        }
        self.status = StatusAggregator(clients)
        self.locks = KeyedLock()

    def get_nginx(self, namespace: str, name: str) -> Nginx | None:
        try:
            body = self.clients.custom.get_namespaced_custom_object(
                group=GROUP, version=VERSION, namespace=namespace, plural=PLURAL, name=name
            )
        except ApiException as e:
            if is_not_found(e):
                return None
            raise
        try:
            return Nginx.from_body(body)
        except ValidationError as e:
            target = {
                "apiVersion": API_VERSION,
                "kind": KIND,
                "metadata": {
                    "name": name,
                    "namespace": namespace,
                    "uid": (body.get("metadata") or {}).get("uid"),
                },
            }
            self.recorder.warning(target, "InvalidSpec", f"invalid Nginx spec: {e}")
            raise

    def reconcile(self, namespace: str, name: str) -> ReconcileResult:
        """
        Run one reconcile pass for the Nginx namespace/name.

        Raises:
            pydantic.ValidationError: If the stored spec is invalid
            ApiException: On API failures, after recording a ReconcileFailed event
        """
        with self.locks.hold(f"{namespace}/{name}"):
            nginx = self.get_nginx(namespace, name)
            if nginx is None:
                logger.info("Nginx %s/%s not found, skipping reconcile", namespace, name)
                return ReconcileResult()

            if not should_manage(self.selector, nginx.metadata.annotations):
                logger.debug("Nginx %s/%s does not match the annotation filter", namespace, name)
                return ReconcileResult(requeue_after=self.config.filter_requeue_seconds)

            result = ReconcileResult()
            try:
                for kind in OwnedKind:
                    if self.reconcilers[kind].reconcile(nginx):
                        result.changed.append(kind)
                result.status_updated = self.status.refresh(nginx)
            except (ApiException, NginxOperatorError) as e:
                message = api_error_message(e) if isinstance(e, ApiException) else str(e)
                self.recorder.warning(nginx_ref(nginx), "ReconcileFailed", message)
                raise

            if result.changed:
                logger.info(
                    "Reconciled Nginx %s/%s, changed: %s",
                    namespace,
                    name,
                    ", ".join(kind.value for kind in result.changed),
                )
            return result

"""
Converges owned objects towards their synthesized form.

Each reconciler reads the live object, decides between create, update,
delete and no-op, and carries forward the fields other actors own
(resourceVersion, allocated IPs and node ports, foreign annotations, HPA
replica counts) before writing.
"""

import copy
import logging
from typing import Any

from kubernetes.client.models import V1Deployment, V1Ingress, V1Service, V1ServiceSpec
from kubernetes.client.rest import ApiException

from nginx_operator.events import EventRecorder, nginx_ref
from nginx_operator.exceptions import ObjectGoneError
from nginx_operator.gcp import IPv6Allocator
from nginx_operator.k8s import (
    ALLOCATE_GCP_IPV6_ANNOTATION,
    GCP_NETWORK_TIER_ANNOTATION,
    OCI_SSL_PORTS_ANNOTATION,
    OCI_TLS_SECRET_ANNOTATION,
    KubeClients,
    api_error_message,
    extract_nginx_spec,
    fingerprint,
    is_already_exists,
    is_not_found,
    is_quota_exceeded,
    labels_for_nginx,
    model_attribute,
    normalize,
    owner_reference,
    set_nginx_spec,
)
from nginx_operator.models import Nginx
from nginx_operator.resources import (
    apply_defaults,
    new_deployment,
    new_ingress,
    new_ipv6_ingress,
    new_service,
)

logger = logging.getLogger(__name__)

# Spelled cluster_i_ps or cluster_ips depending on the client release
CLUSTER_IPS_ATTRIBUTE = model_attribute(V1ServiceSpec, "clusterIPs")


class OwnedObjectReconciler:
    """Read, compare and write one kind of object owned by an Nginx."""

    kind = ""

    def __init__(self, clients: KubeClients, recorder: EventRecorder) -> None:
        self.clients = clients
        self.recorder = recorder

    def reconcile(self, nginx: Nginx) -> bool:
        """
        Converge the owned object for nginx.

        Returns:
            True when a write (create, update or delete) was issued
        """
        desired = self.desired(nginx)
        current = self._get(desired.metadata.name, nginx.namespace)

        if current is None:
            if not self.enabled(nginx):
                return False
            current = self.create(nginx, desired)
            if current is None:
                return True

        if not self.enabled(nginx):
            self._delete(current.metadata.name, nginx.namespace)
            logger.info("Deleted %s %s/%s", self.kind, nginx.namespace, current.metadata.name)
            return True

        if not self.needs_update(nginx, desired, current):
            logger.debug("%s %s/%s is up to date", self.kind, nginx.namespace, current.metadata.name)
            return False

        merged = self.merge(nginx, desired, current)
        self.update(nginx, merged)
        return True

    def enabled(self, nginx: Nginx) -> bool:
        return True

    def desired(self, nginx: Nginx) -> Any:
        raise NotImplementedError

    def needs_update(self, nginx: Nginx, desired: Any, current: Any) -> bool:
        raise NotImplementedError

    def merge(self, nginx: Nginx, desired: Any, current: Any) -> Any:
        raise NotImplementedError

    def create(self, nginx: Nginx, desired: Any) -> Any:
        """
        Create the object.

        Returns:
            None on success, or the live object when it already existed

        Raises:
            ObjectGoneError: If the existing object was deleted before it could be read
        """
        name = desired.metadata.name
        try:
            self._create(nginx.namespace, desired)
        except ApiException as e:
            if is_already_exists(e):
                logger.info("%s %s/%s already exists, updating instead", self.kind, nginx.namespace, name)
                current = self._get(name, nginx.namespace)
                if current is None:
                    raise ObjectGoneError(
                        f"{self.kind} {nginx.namespace}/{name} was deleted while being created", resource=name
                    ) from e
                return current
            reason = f"{self.kind}QuotaExceeded" if is_quota_exceeded(e) else f"{self.kind}CreationFailed"
            self.recorder.warning(
                nginx_ref(nginx), reason, f"failed to create {self.kind}: {api_error_message(e)}"
            )
            raise

        logger.info("Created %s %s/%s", self.kind, nginx.namespace, name)
        self.on_created(nginx)
        return None

    def update(self, nginx: Nginx, merged: Any) -> None:
        try:
            self._replace(merged.metadata.name, nginx.namespace, merged)
        except ApiException as e:
            self.recorder.warning(
                nginx_ref(nginx),
                f"{self.kind}UpdateFailed",
                f"failed to update {self.kind}: {api_error_message(e)}",
            )
            raise
        logger.info("Updated %s %s/%s", self.kind, nginx.namespace, merged.metadata.name)
        self.recorder.normal(nginx_ref(nginx), f"{self.kind}Updated", f"{self.kind.lower()} updated successfully")

    def on_created(self, nginx: Nginx) -> None:
        pass

    def _get(self, name: str, namespace: str) -> Any:
        try:
            return self._read(name, namespace)
        except ApiException as e:
            if is_not_found(e):
                return None
            raise

    def _delete(self, name: str, namespace: str) -> None:
        try:
            self._remove(name, namespace)
        except ApiException as e:
            if not is_not_found(e):
                raise

    # API verbs, bound per kind

    def _read(self, name: str, namespace: str) -> Any:
        raise NotImplementedError

    def _create(self, namespace: str, body: Any) -> Any:
        raise NotImplementedError

    def _replace(self, name: str, namespace: str, body: Any) -> Any:
        raise NotImplementedError

    def _remove(self, name: str, namespace: str) -> Any:
        raise NotImplementedError


class DeploymentReconciler(OwnedObjectReconciler):
    kind = "Deployment"

    def desired(self, nginx: Nginx) -> V1Deployment:
        return new_deployment(nginx)

    def needs_update(self, nginx: Nginx, desired: V1Deployment, current: V1Deployment) -> bool:
        recorded = extract_nginx_spec(current.metadata)
        if recorded is None:
            # Objects without a fingerprint are adopted by rewriting them
            return True
        return fingerprint(recorded) != fingerprint(apply_defaults(nginx.spec))

    def merge(self, nginx: Nginx, desired: V1Deployment, current: V1Deployment) -> V1Deployment:
        merged = current
        replicas = current.spec.replicas
        merged.spec = desired.spec
        if desired.spec.replicas is None:
            # Replica count is owned by an autoscaler
            merged.spec.replicas = replicas

        merged.metadata.labels = {**(current.metadata.labels or {}), **labels_for_nginx(nginx.name)}
        merged.metadata.owner_references = current.metadata.owner_references or [owner_reference(nginx)]
        set_nginx_spec(merged.metadata, apply_defaults(nginx.spec))
        return merged

    def _read(self, name: str, namespace: str) -> V1Deployment:
        return self.clients.apps.read_namespaced_deployment(name=name, namespace=namespace)

    def _create(self, namespace: str, body: V1Deployment) -> V1Deployment:
        return self.clients.apps.create_namespaced_deployment(namespace=namespace, body=body)

    def _replace(self, name: str, namespace: str, body: V1Deployment) -> V1Deployment:
        return self.clients.apps.replace_namespaced_deployment(name=name, namespace=namespace, body=body)


class ServiceReconciler(OwnedObjectReconciler):
    kind = "Service"

    def desired(self, nginx: Nginx) -> V1Service:
        return new_service(nginx)

    def on_created(self, nginx: Nginx) -> None:
        self.recorder.normal(nginx_ref(nginx), "ServiceCreated", "service created successfully")

    def needs_update(self, nginx: Nginx, desired: V1Service, current: V1Service) -> bool:
        merged = self.merge(nginx, copy.deepcopy(desired), current, record_events=True)
        return not services_equal(merged, current)

    def merge(
        self, nginx: Nginx, desired: V1Service, current: V1Service, record_events: bool = False
    ) -> V1Service:
        annotations = dict(desired.metadata.annotations or {})
        current_annotations = current.metadata.annotations or {}

        wanted_tier = annotations.get(GCP_NETWORK_TIER_ANNOTATION)
        current_tier = current_annotations.get(GCP_NETWORK_TIER_ANNOTATION)
        if wanted_tier != current_tier:
            # Changing the tier would release the load balancer IP
            if record_events:
                self.recorder.warning(
                    nginx_ref(nginx),
                    "GCPNetworkTierNoChange",
                    "the GCP network tier of this service cannot be changed, because IP address "
                    "may change and cause downtime",
                )
            if current_tier is None:
                annotations.pop(GCP_NETWORK_TIER_ANNOTATION)
            else:
                annotations[GCP_NETWORK_TIER_ANNOTATION] = current_tier

        for key, value in current_annotations.items():
            if not annotations.get(key):
                annotations[key] = value

        if annotations.get(OCI_SSL_PORTS_ANNOTATION) and nginx.spec.tls:
            first_secret = sorted(tls.secretName for tls in nginx.spec.tls)[0]
            annotations[OCI_TLS_SECRET_ANNOTATION] = f"{nginx.namespace}/{first_secret}"

        desired.metadata.annotations = annotations
        desired.metadata.resource_version = current.metadata.resource_version
        desired.metadata.finalizers = current.metadata.finalizers

        spec = desired.spec
        spec.cluster_ip = current.spec.cluster_ip
        setattr(spec, CLUSTER_IPS_ATTRIBUTE, getattr(current.spec, CLUSTER_IPS_ATTRIBUTE))
        spec.ip_families = current.spec.ip_families
        spec.ip_family_policy = current.spec.ip_family_policy
        spec.health_check_node_port = current.spec.health_check_node_port

        if spec.type in ("NodePort", "LoadBalancer"):
            # Keep allocated node ports so clients outside the cluster are not broken
            node_ports = {port.port: port.node_port for port in current.spec.ports or []}
            for port in spec.ports or []:
                if node_ports.get(port.port):
                    port.node_port = node_ports[port.port]

        return desired

    def _read(self, name: str, namespace: str) -> V1Service:
        return self.clients.core.read_namespaced_service(name=name, namespace=namespace)

    def _create(self, namespace: str, body: V1Service) -> V1Service:
        return self.clients.core.create_namespaced_service(namespace=namespace, body=body)

    def _replace(self, name: str, namespace: str, body: V1Service) -> V1Service:
        return self.clients.core.replace_namespaced_service(name=name, namespace=namespace, body=body)


def services_equal(desired: V1Service, current: V1Service) -> bool:
    """Compare the fields of a Service that this operator manages."""
    if (desired.metadata.labels or {}) != (current.metadata.labels or {}):
        return False
    if (desired.metadata.annotations or {}) != (current.metadata.annotations or {}):
        return False

    want, have = desired.spec, current.spec
    if (want.type or "ClusterIP") != (have.type or "ClusterIP"):
        return False
    if (want.selector or None) != (have.selector or None):
        return False
    if (want.load_balancer_ip or None) != (have.load_balancer_ip or None):
        return False
    if want.external_traffic_policy and want.external_traffic_policy != have.external_traffic_policy:
        return False
    return [_port_key(p) for p in want.ports or []] == [_port_key(p) for p in have.ports or []]


def _port_key(port: Any) -> tuple[Any, ...]:
    return (port.name, port.port, port.protocol or "TCP", str(port.target_port), port.node_port)


class IngressReconciler(OwnedObjectReconciler):
    kind = "Ingress"

    def enabled(self, nginx: Nginx) -> bool:
        return nginx.spec.ingress is not None

    def desired(self, nginx: Nginx) -> V1Ingress:
        return new_ingress(nginx)

    def needs_update(self, nginx: Nginx, desired: V1Ingress, current: V1Ingress) -> bool:
        return not ingresses_equal(desired, current)

    def merge(self, nginx: Nginx, desired: V1Ingress, current: V1Ingress) -> V1Ingress:
        annotations = dict(desired.metadata.annotations or {})
        for key, value in (current.metadata.annotations or {}).items():
            if not annotations.get(key):
                annotations[key] = value
        desired.metadata.annotations = annotations
        desired.metadata.resource_version = current.metadata.resource_version
        desired.metadata.finalizers = current.metadata.finalizers
        return desired

    def _read(self, name: str, namespace: str) -> V1Ingress:
        return self.clients.networking.read_namespaced_ingress(name=name, namespace=namespace)

    def _create(self, namespace: str, body: V1Ingress) -> V1Ingress:
        return self.clients.networking.create_namespaced_ingress(namespace=namespace, body=body)

    def _replace(self, name: str, namespace: str, body: V1Ingress) -> V1Ingress:
        return self.clients.networking.replace_namespaced_ingress(name=name, namespace=namespace, body=body)

    def _remove(self, name: str, namespace: str) -> None:
        self.clients.networking.delete_namespaced_ingress(name=name, namespace=namespace)


def ingresses_equal(desired: V1Ingress, current: V1Ingress) -> bool:
    """Desired annotations must be present on current; labels and spec must match."""
    current_annotations = current.metadata.annotations or {}
    for key, value in (desired.metadata.annotations or {}).items():
        if current_annotations.get(key) != value:
            return False
    if (desired.metadata.labels or {}) != (current.metadata.labels or {}):
        return False
    return normalize(desired.spec) == normalize(current.spec)


class IPv6IngressReconciler(IngressReconciler):
    """Companion Ingress bound to a reserved global IPv6 address."""

    kind = "IPv6Ingress"

    def __init__(self, clients: KubeClients, recorder: EventRecorder, allocator: IPv6Allocator) -> None:
        super().__init__(clients, recorder)
        self.allocator = allocator

    def enabled(self, nginx: Nginx) -> bool:
        ingress = nginx.spec.ingress
        if ingress is None or not ingress.annotations:
            return False
        return ingress.annotations.get(ALLOCATE_GCP_IPV6_ANNOTATION) == "true"

    def desired(self, nginx: Nginx) -> V1Ingress:
        return new_ipv6_ingress(nginx)

    def create(self, nginx: Nginx, desired: V1Ingress) -> Any:
        # The static IP must exist before the load balancer references it
        self.allocator.ensure_ipv6(desired.metadata.name)
        return super().create(nginx, desired)

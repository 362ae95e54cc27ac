"""
Endpoints for Services that opt out of the built-in endpoints controller.

A Service labelled with nginx.tsuru.io/custom-endpoints gets an Endpoints
object computed here from the readiness of the nginx pods it fronts. This
lets Services without a pod selector (usePodSelector: false) still route to
the pods.
"""

import logging
import threading
from typing import Any

from kubernetes.client import CoreV1EndpointPort
from kubernetes.client.models import (
    V1EndpointAddress,
    V1Endpoints,
    V1EndpointSubset,
    V1ObjectMeta,
    V1ObjectReference,
    V1Pod,
    V1Service,
    V1ServicePort,
)
from kubernetes.client.rest import ApiException

from nginx_operator.events import EventRecorder, object_ref
from nginx_operator.k8s import (
    APP_LABEL,
    CUSTOM_ENDPOINTS_LABEL,
    RESOURCE_NAME_LABEL,
    KubeClients,
    api_error_message,
    is_not_found,
    label_selector_for_nginx,
    labels_for_nginx,
    normalize,
)

logger = logging.getLogger(__name__)


def is_custom_endpoints_service(labels: dict[str, str] | None) -> bool:
    if not labels:
        return False
    return all(key in labels for key in (CUSTOM_ENDPOINTS_LABEL, APP_LABEL, RESOURCE_NAME_LABEL))


def is_pod_ready(pod: V1Pod) -> bool:
    conditions = (pod.status.conditions if pod.status else None) or []
    return any(c.type == "Ready" and c.status == "True" for c in conditions)


def should_pod_be_in_endpoints(pod: V1Pod) -> bool:
    """Whether a not-ready pod is still listed as a not-ready address."""
    restart_policy = pod.spec.restart_policy if pod.spec else None
    phase = pod.status.phase if pod.status else None
    if restart_policy == "Never":
        return phase not in ("Failed", "Succeeded")
    if restart_policy == "OnFailure":
        return phase != "Succeeded"
    return True


def pod_to_endpoint_address(pod: V1Pod) -> V1EndpointAddress:
    return V1EndpointAddress(
        ip=pod.status.pod_ip,
        node_name=pod.spec.node_name,
        target_ref=V1ObjectReference(
            kind="Pod",
            namespace=pod.metadata.namespace,
            name=pod.metadata.name,
            uid=pod.metadata.uid,
            resource_version=pod.metadata.resource_version,
        ),
    )


def _address_identity(pod: V1Pod) -> Any:
    address = normalize(pod_to_endpoint_address(pod))
    # resourceVersion changes on every pod write
    address.get("targetRef", {}).pop("resourceVersion", None)
    return address


def pod_changed(old: V1Pod, new: V1Pod) -> bool:
    """
    Decide whether a pod update can affect endpoint membership.

    Only called for updates where the resourceVersion moved.
    """
    if old.metadata.deletion_timestamp != new.metadata.deletion_timestamp:
        return True
    if is_pod_ready(old) != is_pod_ready(new):
        return True
    if _address_identity(old) != _address_identity(new):
        return True
    if (old.metadata.labels or {}) != (new.metadata.labels or {}):
        return True
    return (old.spec.hostname, old.spec.subdomain) != (new.spec.hostname, new.spec.subdomain)


def find_port(pod: V1Pod, service_port: V1ServicePort) -> int | None:
    """Resolve a service port's target against the pod's containers."""
    target = service_port.target_port
    if target is None or target == 0:
        return service_port.port
    if isinstance(target, int):
        return target

    protocol = service_port.protocol or "TCP"
    for container in pod.spec.containers or []:
        for port in container.ports or []:
            if port.name == target and (port.protocol or "TCP") == protocol:
                return port.container_port
    return None


def build_subsets(pods: list[V1Pod], service: V1Service) -> list[V1EndpointSubset]:
    """Compute the repacked endpoint subsets of service over pods."""
    subsets = []
    for pod in pods:
        if not pod.status or not pod.status.pod_ip:
            logger.debug("Pod %s/%s has no IP yet", pod.metadata.namespace, pod.metadata.name)
            continue

        ready = is_pod_ready(pod)
        if not ready and not should_pod_be_in_endpoints(pod):
            continue

        address = pod_to_endpoint_address(pod)
        hostname = pod.spec.hostname
        if (
            hostname
            and pod.spec.subdomain == service.metadata.name
            and pod.metadata.namespace == service.metadata.namespace
        ):
            address.hostname = hostname

        for service_port in service.spec.ports or []:
            port_number = find_port(pod, service_port)
            if port_number is None:
                logger.debug(
                    "Pod %s has no port matching %s of service %s",
                    pod.metadata.name,
                    service_port.target_port,
                    service.metadata.name,
                )
                continue
            port = CoreV1EndpointPort(
                name=service_port.name, port=port_number, protocol=service_port.protocol or "TCP"
            )
            if ready:
                subsets.append(V1EndpointSubset(addresses=[address], ports=[port]))
            else:
                subsets.append(V1EndpointSubset(not_ready_addresses=[address], ports=[port]))

    return repack_subsets(subsets)


def _address_key(address: V1EndpointAddress) -> tuple[str, str]:
    uid = address.target_ref.uid if address.target_ref else None
    return (address.ip or "", uid or "")


def _port_key(port: CoreV1EndpointPort) -> tuple[str, int, str]:
    return (port.name or "", port.port or 0, port.protocol or "TCP")


def repack_subsets(subsets: list[V1EndpointSubset]) -> list[V1EndpointSubset]:
    """
    Coalesce subsets so each address appears once per readiness.

    Addresses sharing the same readiness and the same set of ports end up in
    a single subset. Ready subsets come first; addresses and ports are sorted.
    """
    # (ready, address key) -> [address, {port key: port}]
    collected: dict[tuple[bool, tuple[str, str]], list[Any]] = {}
    for subset in subsets:
        for ready, addresses in ((True, subset.addresses), (False, subset.not_ready_addresses)):
            for address in addresses or []:
                entry = collected.setdefault((ready, _address_key(address)), [address, {}])
                for port in subset.ports or []:
                    entry[1][_port_key(port)] = port

    # (ready, port set) -> addresses
    grouped: dict[tuple[bool, tuple[tuple[str, int, str], ...]], list[V1EndpointAddress]] = {}
    ports_by_set: dict[tuple[tuple[str, int, str], ...], list[CoreV1EndpointPort]] = {}
    for (ready, _), (address, ports) in collected.items():
        port_set = tuple(sorted(ports))
        ports_by_set[port_set] = [ports[key] for key in port_set]
        grouped.setdefault((ready, port_set), []).append(address)

    result = []
    for ready, port_set in sorted(grouped, key=lambda k: (not k[0], k[1])):
        addresses = sorted(grouped[(ready, port_set)], key=_address_key)
        if ready:
            result.append(V1EndpointSubset(addresses=addresses, ports=ports_by_set[port_set]))
        else:
            result.append(V1EndpointSubset(not_ready_addresses=addresses, ports=ports_by_set[port_set]))
    return result


class EndpointsController:
    """Maintains Endpoints objects for custom-endpoints Services."""

    def __init__(self, clients: KubeClients, recorder: EventRecorder) -> None:
        self.clients = clients
        self.recorder = recorder

    def reconcile(self, namespace: str, name: str) -> bool:
        """
        Converge the Endpoints of one Service.

        Returns:
            True when the Endpoints object was written or deleted
        """
        core = self.clients.core
        try:
            service = core.read_namespaced_service(name=name, namespace=namespace)
        except ApiException as e:
            if not is_not_found(e):
                raise
            return self._delete_endpoints(namespace, name)

        if not is_custom_endpoints_service(service.metadata.labels):
            logger.debug("Service %s/%s does not use custom endpoints", namespace, name)
            return False

        nginx_name = service.metadata.labels[RESOURCE_NAME_LABEL]
        pods = core.list_namespaced_pod(
            namespace=namespace, label_selector=label_selector_for_nginx(nginx_name)
        ).items
        subsets = build_subsets(pods, service)

        try:
            current = core.read_namespaced_endpoints(name=name, namespace=namespace)
        except ApiException as e:
            if not is_not_found(e):
                raise
            current = None

        labels = dict(service.metadata.labels or {})
        if (
            current is not None
            and normalize(current.subsets or []) == normalize(subsets)
            and (current.metadata.labels or {}) == labels
        ):
            logger.debug("Endpoints %s/%s are up to date", namespace, name)
            return False

        endpoints = V1Endpoints(
            api_version="v1",
            kind="Endpoints",
            metadata=V1ObjectMeta(
                name=name,
                namespace=namespace,
                labels=labels,
                annotations=(current.metadata.annotations if current else None) or {},
                resource_version=current.metadata.resource_version if current else None,
            ),
            subsets=subsets,
        )

        ready = sum(len(s.addresses or []) for s in subsets)
        not_ready = sum(len(s.not_ready_addresses or []) for s in subsets)
        try:
            if current is None:
                core.create_namespaced_endpoints(namespace=namespace, body=endpoints)
            else:
                core.replace_namespaced_endpoints(name=name, namespace=namespace, body=endpoints)
        except ApiException as e:
            if current is None:
                reason = "FailedToCreateEndpoint"
                message = f"Failed to create endpoint for service {namespace}/{name}: {api_error_message(e)}"
            else:
                reason = "FailedToUpdateEndpoint"
                message = f"Failed to update endpoint {namespace}/{name}: {api_error_message(e)}"
            self.recorder.warning(object_ref("v1", "Service", service.metadata), reason, message)
            raise

        logger.info(
            "Synced endpoints %s/%s: %d ready, %d not ready", namespace, name, ready, not_ready
        )
        return True

    def _delete_endpoints(self, namespace: str, name: str) -> bool:
        try:
            self.clients.core.delete_namespaced_endpoints(name=name, namespace=namespace)
        except ApiException as e:
            if is_not_found(e):
                return False
            raise
        logger.info("Deleted endpoints %s/%s of removed service", namespace, name)
        return True

    def services_for_pod(self, namespace: str, pod_labels: dict[str, str] | None) -> list[str]:
        """Names of custom-endpoints Services in namespace that select the pod."""
        pod_labels = pod_labels or {}
        services = self.clients.core.list_namespaced_service(
            namespace=namespace, label_selector=CUSTOM_ENDPOINTS_LABEL
        ).items

        names = []
        for service in services:
            labels = service.metadata.labels or {}
            if not is_custom_endpoints_service(labels):
                continue
            selector = labels_for_nginx(labels[RESOURCE_NAME_LABEL])
            if all(pod_labels.get(key) == value for key, value in selector.items()):
                names.append(service.metadata.name)
        return sorted(names)


class PodTracker:
    """Remembers the last seen version of each pod to evaluate updates."""

    def __init__(self) -> None:
        self._pods: dict[tuple[str, str], V1Pod] = {}
        self._lock = threading.Lock()

    def observe(self, pod: V1Pod) -> V1Pod | None:
        """Store pod and return the previously seen version, if any."""
        key = (pod.metadata.namespace, pod.metadata.name)
        with self._lock:
            previous = self._pods.get(key)
            self._pods[key] = pod
        return previous

    def forget(self, namespace: str, name: str) -> None:
        with self._lock:
            self._pods.pop((namespace, name), None)

    def should_sync(self, pod: V1Pod) -> bool:
        """
        Decide whether a pod change warrants an endpoints sync.

        First sightings always sync; updates sync when pod_changed says so
        against the last version passed to observe. A pod that needs a sync
        is not recorded here, so a failed sync is attempted again when the
        event is redelivered; callers observe it once the sync succeeds.
        """
        key = (pod.metadata.namespace, pod.metadata.name)
        with self._lock:
            previous = self._pods.get(key)
        if previous is None:
            return True
        if previous.metadata.resource_version == pod.metadata.resource_version:
            return False
        if pod_changed(previous, pod):
            return True
        self.observe(pod)
        return False

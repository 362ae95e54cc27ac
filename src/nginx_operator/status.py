"""
Recomputes the status subresource of an Nginx from the objects it owns
"""

import logging
from typing import Any

from nginx_operator.k8s import (
    API_VERSION,
    GROUP,
    KIND,
    PLURAL,
    VERSION,
    KubeClients,
    is_owned_by,
    label_selector_for_nginx,
)
from nginx_operator.models import (
    DeploymentStatus,
    IngressStatus,
    Nginx,
    NginxStatus,
    PodStatus,
    ServiceStatus,
)

logger = logging.getLogger(__name__)

PENDING = "<pending>"


class StatusAggregator:
    """Builds NginxStatus from live Deployments, Services, Ingresses and Pods."""

    def __init__(self, clients: KubeClients) -> None:
        self.clients = clients

    def compute(self, nginx: Nginx) -> NginxStatus:
        selector = label_selector_for_nginx(nginx.name)
        deployments = self._list_deployments(nginx, selector)

        services = self.clients.core.list_namespaced_service(
            namespace=nginx.namespace, label_selector=selector
        ).items
        ingresses = self.clients.networking.list_namespaced_ingress(
            namespace=nginx.namespace, label_selector=selector
        ).items
        pods = self.clients.core.list_namespaced_pod(
            namespace=nginx.namespace, label_selector=selector
        ).items

        return NginxStatus(
            currentReplicas=sum((d.status.replicas or 0) if d.status else 0 for d in deployments),
            podSelector=selector,
            deployments=sorted(
                (DeploymentStatus(name=d.metadata.name) for d in deployments), key=lambda s: s.name
            ),
            services=sorted(
                (ServiceStatus(name=s.metadata.name, **_lb_addresses(s.status)) for s in services),
                key=lambda s: s.name,
            ),
            ingresses=sorted(
                (IngressStatus(name=i.metadata.name, **_lb_addresses(i.status)) for i in ingresses),
                key=lambda s: s.name,
            ),
            pods=sorted(
                (
                    PodStatus(
                        name=p.metadata.name,
                        podIP=(p.status.pod_ip if p.status else None) or PENDING,
                        hostIP=(p.status.host_ip if p.status else None) or PENDING,
                    )
                    for p in pods
                ),
                key=lambda s: s.name,
            ),
        )

    def refresh(self, nginx: Nginx) -> bool:
        """
        Write the status subresource when it differs from the stored one.

        Returns:
            True when the status was written
        """
        status = self.compute(nginx)
        if status == nginx.status:
            return False

        body = {
            "apiVersion": API_VERSION,
            "kind": KIND,
            "metadata": {
                "name": nginx.name,
                "namespace": nginx.namespace,
                "resourceVersion": nginx.metadata.resourceVersion,
            },
            "status": status.to_json_dict(),
        }
        self.clients.custom.replace_namespaced_custom_object_status(
            group=GROUP,
            version=VERSION,
            namespace=nginx.namespace,
            plural=PLURAL,
            name=nginx.name,
            body=body,
        )
        logger.info(
            "Updated status of Nginx %s/%s: %d replicas",
            nginx.namespace,
            nginx.name,
            status.currentReplicas,
        )
        return True

    def _list_deployments(self, nginx: Nginx, selector: str) -> list[Any]:
        deployments = self.clients.apps.list_namespaced_deployment(
            namespace=nginx.namespace, label_selector=selector
        ).items
        if deployments:
            return list(deployments)

        # Deployments created before labels were applied are found by owner
        everything = self.clients.apps.list_namespaced_deployment(namespace=nginx.namespace).items
        return [d for d in everything if is_owned_by(d.metadata, nginx)]


def _lb_addresses(status: Any) -> dict[str, list[str] | None]:
    ips: list[str] = []
    hostnames: list[str] = []
    load_balancer = status.load_balancer if status else None
    for entry in (load_balancer.ingress if load_balancer else None) or []:
        if entry.ip:
            ips.append(entry.ip)
        if entry.hostname:
            hostnames.append(entry.hostname)
    return {"ips": sorted(ips) or None, "hostnames": sorted(hostnames) or None}

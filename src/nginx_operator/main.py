#!/usr/bin/env python3
"""
Nginx Operator for Kubernetes
"""

import logging
from typing import Any

import kopf
from kubernetes.client.rest import ApiException
from pydantic import ValidationError

from nginx_operator.config import OperatorConfig
from nginx_operator.controller import NginxController, ReconcileResult
from nginx_operator.endpoints import EndpointsController, PodTracker
from nginx_operator.events import KopfEventRecorder
from nginx_operator.exceptions import NginxOperatorError
from nginx_operator.gcp import UnconfiguredIPv6Allocator
from nginx_operator.k8s import (
    APP_LABEL,
    APP_LABEL_VALUE,
    CUSTOM_ENDPOINTS_LABEL,
    GROUP,
    PLURAL,
    VERSION,
    build_clients,
    load_kube_config,
    nginx_name_from_labels,
    to_model,
)

logger = logging.getLogger(__name__)

# Handler intervals are fixed at import time
operator_config = OperatorConfig.load()

OWNED_LABELS = {APP_LABEL: APP_LABEL_VALUE}


def backoff_delay(retry: int, max_delay: int) -> int:
    """Exponential retry delay in seconds: 1, 2, 4, ... capped at max_delay."""
    return int(min(2 ** min(retry, 30), max_delay))


@kopf.on.startup()
def configure(settings: kopf.OperatorSettings, memo: kopf.Memo, **_: Any) -> None:
    """Configure kopf and build the controllers shared by all handlers."""
    settings.execution.max_workers = operator_config.max_workers
    settings.persistence.progress_storage = kopf.AnnotationsProgressStorage(prefix=GROUP)
    settings.posting.level = logging.INFO

    load_kube_config()
    clients = build_clients()
    recorder = KopfEventRecorder()

    memo.controller = NginxController(
        clients,
        recorder,
        operator_config,
        UnconfiguredIPv6Allocator(operator_config.gcp_project),
    )
    memo.endpoints = EndpointsController(clients, recorder)
    memo.pods = PodTracker()
    logger.info(
        "Operator configured: sync period %ss, annotation filter %r",
        operator_config.sync_period_seconds,
        operator_config.annotation_filter,
    )


def run_reconcile(
    memo: kopf.Memo, namespace: str, name: str, retry: int = 0, requeue_filtered: bool = True
) -> ReconcileResult:
    """
    Reconcile one Nginx, translating failures into kopf retry semantics.

    Watch events on owned objects pass requeue_filtered=False: an Nginx left
    to another operator instance is then skipped quietly instead of raising.

    Raises:
        kopf.PermanentError: If the Nginx spec is invalid
        kopf.TemporaryError: On API failures or when the annotation filter excludes it
    """
    controller: NginxController = memo.controller
    try:
        result = controller.reconcile(namespace, name)
    except ValidationError as e:
        raise kopf.PermanentError(f"Invalid Nginx spec: {e}") from e
    except (ApiException, NginxOperatorError) as e:
        delay = backoff_delay(retry, operator_config.max_backoff_seconds)
        raise kopf.TemporaryError(f"Reconcile of {namespace}/{name} failed: {e}", delay=delay) from e

    if result.requeue_after is not None and requeue_filtered:
        raise kopf.TemporaryError(
            f"Nginx {namespace}/{name} does not match the annotation filter",
            delay=result.requeue_after,
        )
    return result


@kopf.on.resume(GROUP, VERSION, PLURAL)
@kopf.on.create(GROUP, VERSION, PLURAL)
@kopf.on.update(GROUP, VERSION, PLURAL)
def reconcile_nginx(
    name: str, namespace: str, memo: kopf.Memo, retry: int, logger: logging.Logger, **_: Any
) -> None:
    """Converge owned objects whenever an Nginx is created or changed."""
    logger.info(f"Reconciling Nginx: {name} in namespace: {namespace}")
    run_reconcile(memo, namespace, name, retry)


@kopf.timer(
    GROUP,
    VERSION,
    PLURAL,
    interval=operator_config.sync_period_seconds,
    initial_delay=operator_config.sync_period_seconds,
)
def resync_nginx(name: str, namespace: str, memo: kopf.Memo, retry: int, **_: Any) -> None:
    """Periodic resync so drift is corrected even without watch events."""
    run_reconcile(memo, namespace, name, retry)


@kopf.on.event("apps", "v1", "deployments", labels=OWNED_LABELS)
@kopf.on.event("", "v1", "services", labels=OWNED_LABELS)
@kopf.on.event("networking.k8s.io", "v1", "ingresses", labels=OWNED_LABELS)
def owned_object_changed(
    event: dict[str, Any], body: kopf.Body, namespace: str, memo: kopf.Memo, **_: Any
) -> None:
    """Reconcile the owning Nginx when one of its objects changes or disappears."""
    if event.get("type") is None:
        # Initial listing, already covered by the resume handler
        return
    nginx_name = nginx_name_from_labels(dict(body.get("metadata", {}).get("labels") or {}))
    if nginx_name:
        run_reconcile(memo, namespace, nginx_name, requeue_filtered=False)


@kopf.on.event("", "v1", "pods", labels=OWNED_LABELS)
def pod_event(
    event: dict[str, Any], body: kopf.Body, namespace: str, memo: kopf.Memo, **_: Any
) -> None:
    """Resync endpoints and status when a pod change affects service membership."""
    pod = to_model(dict(body), "V1Pod")
    tracker: PodTracker = memo.pods
    if event.get("type") == "DELETED":
        tracker.forget(namespace, pod.metadata.name)
    elif not tracker.should_sync(pod):
        return

    endpoints: EndpointsController = memo.endpoints
    for service_name in endpoints.services_for_pod(namespace, pod.metadata.labels):
        endpoints.reconcile(namespace, service_name)
    if event.get("type") != "DELETED":
        tracker.observe(pod)

    nginx_name = nginx_name_from_labels(pod.metadata.labels)
    if nginx_name and event.get("type") is not None:
        run_reconcile(memo, namespace, nginx_name, requeue_filtered=False)


@kopf.on.event("", "v1", "services", labels={CUSTOM_ENDPOINTS_LABEL: kopf.PRESENT})
def custom_endpoints_service_changed(name: str, namespace: str, memo: kopf.Memo, **_: Any) -> None:
    """Keep Endpoints in step with custom-endpoints Services, deleting them with the Service."""
    endpoints: EndpointsController = memo.endpoints
    endpoints.reconcile(namespace, name)


@kopf.timer(
    "",
    "v1",
    "services",
    labels={CUSTOM_ENDPOINTS_LABEL: kopf.PRESENT},
    interval=operator_config.sync_period_seconds,
    initial_delay=operator_config.sync_period_seconds,
)
def resync_custom_endpoints(name: str, namespace: str, memo: kopf.Memo, retry: int, **_: Any) -> None:
    """Periodic Endpoints resync, retried with backoff when a write fails."""
    endpoints: EndpointsController = memo.endpoints
    try:
        endpoints.reconcile(namespace, name)
    except ApiException as e:
        delay = backoff_delay(retry, operator_config.max_backoff_seconds)
        raise kopf.TemporaryError(f"Endpoints sync of {namespace}/{name} failed: {e}", delay=delay) from e


def main() -> None:
    """Main entry point for the operator"""
    logging.basicConfig(level=operator_config.log_level)

    logger.info("Starting Nginx Operator...")

    if operator_config.clusterwide:
        scope: dict[str, Any] = {"clusterwide": True}
    else:
        scope = {"namespaces": [operator_config.watch_namespace]}
    kopf.run(
        **scope,
        liveness_endpoint=operator_config.liveness_endpoint,
    )


if __name__ == "__main__":
    main()

"""
Kubernetes helpers shared by the synthesizer, merger and controllers
"""

import json
import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Any

from kubernetes import client, config
from kubernetes.client import ApiClient, models
from kubernetes.client.models import V1ObjectMeta, V1OwnerReference
from kubernetes.client.rest import ApiException
from pydantic import ValidationError

from nginx_operator.exceptions import SpecAnnotationError
from nginx_operator.models import Nginx, NginxSpec

logger = logging.getLogger(__name__)

GROUP = "nginx.tsuru.io"
VERSION = "v1alpha1"
PLURAL = "nginxes"
KIND = "Nginx"
API_VERSION = f"{GROUP}/{VERSION}"

# Labels placed on every owned object
APP_LABEL = "nginx.tsuru.io/app"
APP_LABEL_VALUE = "nginx"
RESOURCE_NAME_LABEL = "nginx.tsuru.io/resource-name"
# Services carrying this label get their Endpoints from this operator
CUSTOM_ENDPOINTS_LABEL = "nginx.tsuru.io/custom-endpoints"

GENERATED_FROM_ANNOTATION = "nginx.tsuru.io/generated-from"
CUSTOM_NGINX_CONFIG_ANNOTATION = "nginx.tsuru.io/custom-nginx-config"
ALLOCATE_GCP_IPV6_ANNOTATION = "nginx.tsuru.io/allocate-gcp-ipv6"
GCP_NETWORK_TIER_ANNOTATION = "cloud.google.com/network-tier"
GCP_STATIC_IP_ANNOTATION = "kubernetes.io/ingress.global-static-ip-name"
OCI_TLS_SECRET_ANNOTATION = "service.beta.kubernetes.io/oci-load-balancer-tls-secret"
OCI_SSL_PORTS_ANNOTATION = "service.beta.kubernetes.io/oci-load-balancer-ssl-ports"


def labels_for_nginx(name: str) -> dict[str, str]:
    """Return the label pair that identifies objects owned by an Nginx."""
    return {RESOURCE_NAME_LABEL: name, APP_LABEL: APP_LABEL_VALUE}


def format_labels(labels: dict[str, str] | None) -> str:
    """Format labels as a selector string with keys in sorted order."""
    if not labels:
        return ""
    return ",".join(f"{key}={labels[key]}" for key in sorted(labels))


def label_selector_for_nginx(name: str) -> str:
    return format_labels(labels_for_nginx(name))


def nginx_name_from_labels(labels: dict[str, str] | None) -> str | None:
    if not labels or labels.get(APP_LABEL) != APP_LABEL_VALUE:
        return None
    return labels.get(RESOURCE_NAME_LABEL) or None


def owner_reference(nginx: Nginx) -> V1OwnerReference:
    return V1OwnerReference(
        api_version=API_VERSION,
        kind=KIND,
        name=nginx.name,
        uid=nginx.metadata.uid,
        controller=True,
        block_owner_deletion=True,
    )


def is_owned_by(meta: V1ObjectMeta, nginx: Nginx) -> bool:
    """Check whether an object's controller owner reference points at the Nginx."""
    for ref in meta.owner_references or []:
        if (
            ref.controller
            and ref.kind == KIND
            and ref.api_version == API_VERSION
            and ref.name == nginx.name
            and ref.uid == nginx.metadata.uid
        ):
            return True
    return False


def fingerprint(spec: NginxSpec) -> str:
    """Canonical JSON of a spec, stable across runs."""
    return json.dumps(spec.to_json_dict(), sort_keys=True)


def set_nginx_spec(meta: V1ObjectMeta, spec: NginxSpec) -> None:
    """Record the spec an object was generated from in its annotations."""
    if meta.annotations is None:
        meta.annotations = {}
    meta.annotations[GENERATED_FROM_ANNOTATION] = fingerprint(spec)


def extract_nginx_spec(meta: V1ObjectMeta) -> NginxSpec | None:
    """
    Read back the spec recorded by set_nginx_spec.

    Returns:
        The recorded spec, or None when the annotation is absent

    Raises:
        SpecAnnotationError: If the annotation is present but cannot be parsed
    """
    raw = (meta.annotations or {}).get(GENERATED_FROM_ANNOTATION)
    if raw is None:
        return None
    try:
        return NginxSpec.model_validate(json.loads(raw))
    except (ValueError, ValidationError) as e:
        raise SpecAnnotationError(
            f"failed to parse {GENERATED_FROM_ANNOTATION} annotation: {e}", resource=meta.name
        ) from e


@lru_cache(maxsize=1)
def _api_client() -> ApiClient:
    return ApiClient()


def to_model(data: Any, klass: str) -> Any:
    """
    Convert a camelCase dictionary into a kubernetes client model (e.g. "V1Affinity").

    Walks the generated openapi_types and attribute_map tables rather than
    ApiClient.deserialize, whose signature is not stable across client releases.
    Primitive and free-form types ("str", "object", "datetime") are returned as is.
    """
    if data is None:
        return None
    lowered = klass.lower()
    if lowered.startswith("list[") and klass.endswith("]"):
        return [to_model(item, klass[5:-1]) for item in data]
    if lowered.startswith(("dict(", "dict[")):
        value_type = klass[5:-1].split(",", 1)[1].strip()
        return {key: to_model(value, value_type) for key, value in data.items()}

    model = getattr(models, klass, None)
    if not isinstance(model, type) or not hasattr(model, "attribute_map"):
        return data
    kwargs = {
        attr: to_model(data[key], model.openapi_types[attr])
        for attr, key in model.attribute_map.items()
        if key in data
    }
    return model(**kwargs)


def model_attribute(model: type, wire_name: str) -> str:
    """Python attribute name of a model field, e.g. "clusterIPs" on V1ServiceSpec."""
    return next(attr for attr, key in model.attribute_map.items() if key == wire_name)


def to_dict(obj: Any) -> Any:
    """Convert a kubernetes client model into its camelCase wire representation."""
    return _api_client().sanitize_for_serialization(obj)


def _status_body(e: ApiException) -> dict[str, Any]:
    if not e.body:
        return {}
    try:
        body = json.loads(e.body)
    except (TypeError, ValueError):
        return {}
    return body if isinstance(body, dict) else {}


def is_not_found(e: Exception) -> bool:
    return isinstance(e, ApiException) and e.status == 404


def is_already_exists(e: Exception) -> bool:
    if not isinstance(e, ApiException) or e.status != 409:
        return False
    return _status_body(e).get("reason", e.reason) == "AlreadyExists"


def is_conflict(e: Exception) -> bool:
    return isinstance(e, ApiException) and e.status == 409 and not is_already_exists(e)


def is_forbidden(e: Exception) -> bool:
    return isinstance(e, ApiException) and e.status == 403


def is_quota_exceeded(e: Exception) -> bool:
    if not is_forbidden(e):
        return False
    message = _status_body(e).get("message") or str(e.body or "")
    return "exceeded quota" in message


def api_error_message(e: ApiException) -> str:
    return _status_body(e).get("message") or e.reason or str(e)


def normalize(obj: Any) -> Any:
    """
    Wire representation with empty values dropped.

    The API server omits empty strings, lists and maps, so comparing normalized
    forms avoids reporting a difference between "" and an absent field.
    """
    return _drop_empty(to_dict(obj))


def _drop_empty(data: Any) -> Any:
    if isinstance(data, dict):
        cleaned = {key: _drop_empty(value) for key, value in data.items()}
        return {key: value for key, value in cleaned.items() if value not in (None, "", [], {})}
    if isinstance(data, list):
        return [_drop_empty(item) for item in data]
    return data


@dataclass
class KubeClients:
    """Kubernetes API clients used by the controllers."""

    core: client.CoreV1Api
    apps: client.AppsV1Api
    networking: client.NetworkingV1Api
    custom: client.CustomObjectsApi


def load_kube_config() -> None:
    """Load in-cluster configuration, falling back to the local kubeconfig."""
    try:
        config.load_incluster_config()
        logger.info("Loaded in-cluster Kubernetes config")
    except config.ConfigException:
        config.load_kube_config()
        logger.info("Loaded local Kubernetes config")


def build_clients() -> KubeClients:
    return KubeClients(
        core=client.CoreV1Api(),
        apps=client.AppsV1Api(),
        networking=client.NetworkingV1Api(),
        custom=client.CustomObjectsApi(),
    )

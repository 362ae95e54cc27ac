"""
Pydantic models for the Nginx custom resource (nginx.tsuru.io/v1alpha1)

Field names follow the camelCase spelling of the CRD so that a resource body
can be validated directly. Embedded Kubernetes structures (affinity, volumes,
containers, ...) are kept as camelCase dictionaries and converted to client
models during synthesis.
"""

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class _CRModel(BaseModel):
    model_config = ConfigDict(extra="ignore")


class ConfigRef(_CRModel):
    """Reference to the nginx.conf used by the nginx container."""

    kind: Literal["ConfigMap", "Inline"] = Field(
        default="ConfigMap", description="Where the configuration is read from"
    )
    name: str | None = Field(default=None, description="ConfigMap name when kind is ConfigMap")
    value: str | None = Field(default=None, description="Raw nginx.conf when kind is Inline")


class NginxTLS(_CRModel):
    secretName: str = Field(..., description="Secret holding the certificate and key pair")
    hosts: list[str] | None = Field(default=None, description="Hosts served by this certificate")


class NginxService(_CRModel):
    type: str | None = Field(default=None, description="Service type, defaults to ClusterIP")
    loadBalancerIP: str | None = None
    labels: dict[str, str] | None = None
    annotations: dict[str, str] | None = None
    externalTrafficPolicy: str | None = None
    usePodSelector: bool | None = Field(
        default=None, description="When false the Service is created without a selector"
    )

    @property
    def uses_pod_selector(self) -> bool:
        return self.usePodSelector is not False


class NginxIngress(_CRModel):
    annotations: dict[str, str] | None = None
    labels: dict[str, str] | None = None
    ingressClassName: str | None = None


class FilesRef(_CRModel):
    name: str = Field(..., description="ConfigMap holding the extra files")
    files: dict[str, str] | None = Field(
        default=None, description="ConfigMap key to relative path under the extra files dir"
    )


class RollingUpdate(_CRModel):
    maxSurge: int | str | None = None
    maxUnavailable: int | str | None = None


class NginxPodTemplateSpec(_CRModel):
    affinity: dict[str, Any] | None = None
    nodeSelector: dict[str, str] | None = None
    annotations: dict[str, str] | None = None
    labels: dict[str, str] | None = None
    hostNetwork: bool = False
    ports: list[dict[str, Any]] | None = None
    terminationGracePeriodSeconds: int | None = None
    securityContext: dict[str, Any] | None = None
    podSecurityContext: dict[str, Any] | None = None
    volumes: list[dict[str, Any]] | None = None
    volumeMounts: list[dict[str, Any]] | None = None
    initContainers: list[dict[str, Any]] | None = None
    containers: list[dict[str, Any]] | None = None
    toleration: list[dict[str, Any]] | None = None
    topologySpreadConstraints: list[dict[str, Any]] | None = None
    serviceAccountName: str | None = None
    rollingUpdate: RollingUpdate | None = None


class NginxCacheSpec(_CRModel):
    path: str | None = Field(default=None, description="Mount path of the cache volume")
    inMemory: bool = False
    size: str | int | None = Field(default=None, description="Kubernetes quantity, e.g. 100Mi")


class ExecAction(_CRModel):
    command: list[str] | None = None


class NginxLifecycleHandler(_CRModel):
    exec: ExecAction | None = None


class NginxLifecycle(_CRModel):
    postStart: NginxLifecycleHandler | None = None
    preStop: NginxLifecycleHandler | None = None


class NginxSpec(_CRModel):
    """Desired state of an Nginx resource."""

    replicas: int | None = Field(default=None, ge=0, description="None leaves scaling to an HPA")
    image: str | None = None
    config: ConfigRef | None = None
    tls: list[NginxTLS] | None = None
    podTemplate: NginxPodTemplateSpec = Field(default_factory=NginxPodTemplateSpec)
    service: NginxService | None = None
    ingress: NginxIngress | None = None
    extraFiles: FilesRef | None = None
    healthcheckPath: str | None = None
    resources: dict[str, Any] | None = None
    cache: NginxCacheSpec = Field(default_factory=NginxCacheSpec)
    lifecycle: NginxLifecycle | None = None

    def to_json_dict(self) -> dict[str, Any]:
        """Serialise with CRD field names, omitting unset values."""
        return self.model_dump(mode="json", exclude_none=True)


class DeploymentStatus(_CRModel):
    name: str


class ServiceStatus(_CRModel):
    name: str
    ips: list[str] | None = None
    hostnames: list[str] | None = None


class IngressStatus(_CRModel):
    name: str
    ips: list[str] | None = None
    hostnames: list[str] | None = None


class PodStatus(_CRModel):
    name: str
    podIP: str
    hostIP: str


class NginxStatus(_CRModel):
    """Observed state, written only by the status aggregator."""

    currentReplicas: int = 0
    podSelector: str = ""
    deployments: list[DeploymentStatus] = Field(default_factory=list)
    services: list[ServiceStatus] = Field(default_factory=list)
    ingresses: list[IngressStatus] = Field(default_factory=list)
    pods: list[PodStatus] = Field(default_factory=list)

    def to_json_dict(self) -> dict[str, Any]:
        return self.model_dump(mode="json", exclude_none=True)


class NginxMetadata(_CRModel):
    name: str
    namespace: str
    uid: str | None = None
    resourceVersion: str | None = None
    annotations: dict[str, str] = Field(default_factory=dict)
    labels: dict[str, str] = Field(default_factory=dict)


class Nginx(_CRModel):
    """An Nginx custom resource as read from the API server."""

    metadata: NginxMetadata
    spec: NginxSpec = Field(default_factory=NginxSpec)
    status: NginxStatus = Field(default_factory=NginxStatus)

    @property
    def name(self) -> str:
        return self.metadata.name

    @property
    def namespace(self) -> str:
        return self.metadata.namespace

    @classmethod
    def from_body(cls, body: Any) -> "Nginx":
        """Validate a raw resource body (dict or kopf Body)."""
        data = dict(body)
        data["metadata"] = dict(data.get("metadata") or {})
        data["spec"] = dict(data.get("spec") or {})
        data["status"] = _strip_kopf_status(dict(data.get("status") or {}))
        return cls.model_validate(data)


def _strip_kopf_status(status: dict[str, Any]) -> dict[str, Any]:
    # kopf may keep handler results under status.<handler_name>
    known = set(NginxStatus.model_fields)
    return {key: value for key, value in status.items() if key in known}

"""
Builds the desired Deployment, Service and Ingress for an Nginx resource.

Every function here is pure: the same Nginx always yields the same objects,
and nothing talks to the API server.
"""

import math
import posixpath
from decimal import Decimal
from typing import Any

from kubernetes.client.models import (
    V1Capabilities,
    V1ConfigMapVolumeSource,
    V1Container,
    V1Deployment,
    V1DeploymentSpec,
    V1DeploymentStrategy,
    V1DownwardAPIVolumeFile,
    V1DownwardAPIVolumeSource,
    V1EmptyDirVolumeSource,
    V1HTTPIngressPath,
    V1HTTPIngressRuleValue,
    V1Ingress,
    V1IngressBackend,
    V1IngressRule,
    V1IngressServiceBackend,
    V1IngressSpec,
    V1IngressTLS,
    V1KeyToPath,
    V1LabelSelector,
    V1ObjectFieldSelector,
    V1ObjectMeta,
    V1PodSpec,
    V1PodTemplateSpec,
    V1RollingUpdateDeployment,
    V1SecretVolumeSource,
    V1SecurityContext,
    V1Service,
    V1ServiceBackendPort,
    V1ServicePort,
    V1ServiceSpec,
    V1Volume,
    V1VolumeMount,
)
from kubernetes.utils.quantity import parse_quantity

from nginx_operator.k8s import (
    CUSTOM_NGINX_CONFIG_ANNOTATION,
    GCP_STATIC_IP_ANNOTATION,
    labels_for_nginx,
    owner_reference,
    set_nginx_spec,
    to_model,
)
from nginx_operator.models import Nginx, NginxSpec

DEFAULT_IMAGE = "nginx:latest"

HTTP_PORT_NAME = "http"
HTTPS_PORT_NAME = "https"
PROXY_HTTP_PORT_NAME = "proxy-http"
PROXY_HTTPS_PORT_NAME = "proxy-https"

DEFAULT_HTTP_PORT = 8080
DEFAULT_HTTPS_PORT = 8443
HOST_NETWORK_HTTP_PORT = 80
HOST_NETWORK_HTTPS_PORT = 443

SERVICE_HTTP_PORT = 80
SERVICE_HTTPS_PORT = 443

CONFIG_MOUNT_PATH = "/etc/nginx"
CONFIG_FILE_NAME = "nginx.conf"
CERT_MOUNT_PATH = CONFIG_MOUNT_PATH + "/certs"
EXTRA_FILES_MOUNT_PATH = CONFIG_MOUNT_PATH + "/extra_files"

CONFIG_VOLUME_NAME = "nginx-config"
EXTRA_FILES_VOLUME_NAME = "nginx-extra-files"
CACHE_VOLUME_NAME = "cache-vol"

# nginx may overshoot max_size while the cache manager catches up
CACHE_VOLUME_EXTRA_SIZE = Decimal("1.05")

PROBE_TIMEOUT_SECONDS = 1
CURL_PROBE_COMMAND = "curl -m{timeout} -kfsS -o /dev/null {url}"

NGINX_ENTRYPOINT = [
    "/bin/sh",
    "-c",
    "while ! [ -f /tmp/done ]; do [ -f /tmp/error ] && cat /tmp/error >&2; sleep 0.5; done "
    "&& exec nginx -g 'daemon off;'",
]

DEFAULT_POST_START_COMMAND = [
    "/bin/sh",
    "-c",
    "nginx -t | tee /tmp/error && touch /tmp/done",
]

_BINARY_SUFFIXES = [
    ("Ei", 2**60),
    ("Pi", 2**50),
    ("Ti", 2**40),
    ("Gi", 2**30),
    ("Mi", 2**20),
    ("Ki", 2**10),
]


def service_name(nginx_name: str) -> str:
    return f"{nginx_name}-service"


def ipv6_ingress_name(nginx_name: str) -> str:
    return f"{nginx_name}-ipv6"


def apply_defaults(spec: NginxSpec) -> NginxSpec:
    """Return a copy of spec with image and http/https ports filled in."""
    spec = spec.model_copy(deep=True)
    if not spec.image:
        spec.image = DEFAULT_IMAGE

    template = spec.podTemplate
    ports = list(template.ports or [])
    if _port_by_name(ports, HTTP_PORT_NAME) is None:
        ports.append(
            {
                "name": HTTP_PORT_NAME,
                "containerPort": HOST_NETWORK_HTTP_PORT if template.hostNetwork else DEFAULT_HTTP_PORT,
                "protocol": "TCP",
            }
        )
    if _port_by_name(ports, HTTPS_PORT_NAME) is None:
        ports.append(
            {
                "name": HTTPS_PORT_NAME,
                "containerPort": HOST_NETWORK_HTTPS_PORT if template.hostNetwork else DEFAULT_HTTPS_PORT,
                "protocol": "TCP",
            }
        )
    template.ports = ports
    return spec


def _port_by_name(ports: list[dict[str, Any]] | None, name: str) -> dict[str, Any] | None:
    for port in ports or []:
        if port.get("name") == name:
            return port
    return None


def _metadata(
    nginx: Nginx, name: str, labels: dict[str, str], annotations: dict[str, str] | None = None
) -> V1ObjectMeta:
    return V1ObjectMeta(
        name=name,
        namespace=nginx.namespace,
        labels=labels,
        annotations=annotations,
        owner_references=[owner_reference(nginx)],
    )


def new_deployment(nginx: Nginx) -> V1Deployment:
    """Build the Deployment running the nginx pods."""
    spec = apply_defaults(nginx.spec)
    template = spec.podTemplate
    owned_labels = labels_for_nginx(nginx.name)

    security_context = to_model(template.securityContext, "V1SecurityContext")
    if any(port.get("containerPort", 0) < 1024 for port in template.ports or []):
        if security_context is None:
            security_context = V1SecurityContext()
        if security_context.capabilities is None:
            security_context.capabilities = V1Capabilities()
        added = list(security_context.capabilities.add or [])
        if "NET_BIND_SERVICE" not in added:
            added.append("NET_BIND_SERVICE")
        security_context.capabilities.add = added

    nginx_container = V1Container(
        name="nginx",
        image=spec.image,
        command=list(NGINX_ENTRYPOINT),
        resources=to_model(spec.resources, "V1ResourceRequirements"),
        security_context=security_context,
        ports=[to_model(port, "V1ContainerPort") for port in template.ports or []],
        volume_mounts=[to_model(m, "V1VolumeMount") for m in template.volumeMounts or []],
    )
    extra_containers = [to_model(c, "V1Container") for c in template.containers or []]

    pod_spec = V1PodSpec(
        service_account_name=template.serviceAccountName,
        enable_service_links=False,
        containers=[nginx_container, *extra_containers],
        init_containers=[to_model(c, "V1Container") for c in template.initContainers or []] or None,
        affinity=to_model(template.affinity, "V1Affinity"),
        node_selector=template.nodeSelector,
        host_network=template.hostNetwork,
        termination_grace_period_seconds=template.terminationGracePeriodSeconds,
        volumes=[to_model(v, "V1Volume") for v in template.volumes or []],
        tolerations=[to_model(t, "V1Toleration") for t in template.toleration or []] or None,
        topology_spread_constraints=[
            to_model(t, "V1TopologySpreadConstraint") for t in template.topologySpreadConstraints or []
        ]
        or None,
        security_context=to_model(template.podSecurityContext, "V1PodSecurityContext"),
    )

    deployment = V1Deployment(
        api_version="apps/v1",
        kind="Deployment",
        metadata=_metadata(nginx, nginx.name, dict(owned_labels)),
        spec=V1DeploymentSpec(
            replicas=spec.replicas,
            strategy=V1DeploymentStrategy(
                type="RollingUpdate",
                rolling_update=_rolling_update(spec),
            ),
            selector=V1LabelSelector(match_labels=dict(owned_labels)),
            template=V1PodTemplateSpec(
                metadata=V1ObjectMeta(
                    namespace=nginx.namespace,
                    annotations=dict(template.annotations) if template.annotations else None,
                    # Owned labels win so the selector always matches
                    labels={**(template.labels or {}), **owned_labels},
                ),
                spec=pod_spec,
            ),
        ),
    )

    _setup_probes(spec, deployment)
    _setup_config(spec, deployment)
    _setup_tls(spec, deployment)
    _setup_extra_files(spec, deployment)
    _setup_cache_volume(spec, deployment)
    _setup_lifecycle(spec, deployment)

    set_nginx_spec(deployment.metadata, spec)
    return deployment


def _rolling_update(spec: NginxSpec) -> V1RollingUpdateDeployment:
    max_surge: int | str | None = None
    max_unavailable: int | str | None = None
    if spec.podTemplate.hostNetwork:
        # Host port clashes mean at least one pod must go down before a new one starts
        replicas = spec.replicas if spec.replicas and spec.replicas > 0 else 1
        max_surge = max_unavailable = math.ceil(replicas * 0.25)

    if spec.podTemplate.rollingUpdate is not None:
        max_surge = spec.podTemplate.rollingUpdate.maxSurge
        max_unavailable = spec.podTemplate.rollingUpdate.maxUnavailable

    return V1RollingUpdateDeployment(max_surge=max_surge, max_unavailable=max_unavailable)


def _nginx_container(deployment: V1Deployment) -> V1Container:
    return deployment.spec.template.spec.containers[0]


def _add_volume(deployment: V1Deployment, volume: V1Volume, mount: V1VolumeMount) -> None:
    pod_spec = deployment.spec.template.spec
    pod_spec.volumes = [*(pod_spec.volumes or []), volume]
    container = _nginx_container(deployment)
    container.volume_mounts = [*(container.volume_mounts or []), mount]


def _setup_probes(spec: NginxSpec, deployment: V1Deployment) -> None:
    healthcheck_path = spec.healthcheckPath or ""
    commands = []

    http_port = _port_by_name(spec.podTemplate.ports, HTTP_PORT_NAME)
    if http_port is not None:
        url = f"http://localhost:{http_port['containerPort']}{healthcheck_path}"
        commands.append(CURL_PROBE_COMMAND.format(timeout=PROBE_TIMEOUT_SECONDS, url=url))

    if spec.tls:
        https_port = _port_by_name(spec.podTemplate.ports, HTTPS_PORT_NAME)
        if https_port is not None:
            url = f"https://localhost:{https_port['containerPort']}{healthcheck_path}"
            commands.append(CURL_PROBE_COMMAND.format(timeout=PROBE_TIMEOUT_SECONDS, url=url))

    if not commands:
        return

    _nginx_container(deployment).readiness_probe = to_model(
        {
            "timeoutSeconds": PROBE_TIMEOUT_SECONDS * len(commands),
            "exec": {"command": ["sh", "-c", " && ".join(commands)]},
        },
        "V1Probe",
    )


def _setup_config(spec: NginxSpec, deployment: V1Deployment) -> None:
    conf = spec.config
    if conf is None:
        return

    mount = V1VolumeMount(
        name=CONFIG_VOLUME_NAME,
        mount_path=f"{CONFIG_MOUNT_PATH}/{CONFIG_FILE_NAME}",
        sub_path=CONFIG_FILE_NAME,
        read_only=True,
    )

    if conf.kind == "Inline":
        pod_meta = deployment.spec.template.metadata
        pod_meta.annotations = {
            **(pod_meta.annotations or {}),
            CUSTOM_NGINX_CONFIG_ANNOTATION: conf.value or "",
        }
        volume = V1Volume(
            name=CONFIG_VOLUME_NAME,
            downward_api=V1DownwardAPIVolumeSource(
                items=[
                    V1DownwardAPIVolumeFile(
                        path=CONFIG_FILE_NAME,
                        field_ref=V1ObjectFieldSelector(
                            field_path=f"metadata.annotations['{CUSTOM_NGINX_CONFIG_ANNOTATION}']"
                        ),
                    )
                ]
            ),
        )
    else:
        volume = V1Volume(
            name=CONFIG_VOLUME_NAME,
            config_map=V1ConfigMapVolumeSource(name=conf.name, optional=False),
        )

    _add_volume(deployment, volume, mount)


def _setup_tls(spec: NginxSpec, deployment: V1Deployment) -> None:
    for index, tls in enumerate(spec.tls or []):
        volume_name = f"nginx-certs-{index}"
        _add_volume(
            deployment,
            V1Volume(
                name=volume_name,
                secret=V1SecretVolumeSource(secret_name=tls.secretName, optional=False),
            ),
            V1VolumeMount(
                name=volume_name,
                mount_path=posixpath.join(CERT_MOUNT_PATH, tls.secretName),
                read_only=True,
            ),
        )


def _setup_extra_files(spec: NginxSpec, deployment: V1Deployment) -> None:
    files_ref = spec.extraFiles
    if files_ref is None:
        return

    items = [V1KeyToPath(key=key, path=path) for key, path in sorted((files_ref.files or {}).items())]
    _add_volume(
        deployment,
        V1Volume(
            name=EXTRA_FILES_VOLUME_NAME,
            config_map=V1ConfigMapVolumeSource(name=files_ref.name, items=items or None),
        ),
        V1VolumeMount(name=EXTRA_FILES_VOLUME_NAME, mount_path=EXTRA_FILES_MOUNT_PATH),
    )


def _setup_cache_volume(spec: NginxSpec, deployment: V1Deployment) -> None:
    cache = spec.cache
    if not cache.path:
        return

    empty_dir = V1EmptyDirVolumeSource(medium="Memory" if cache.inMemory else None)
    if cache.size is not None:
        limit = math.ceil(parse_quantity(cache.size) * CACHE_VOLUME_EXTRA_SIZE)
        empty_dir.size_limit = format_binary_quantity(limit)

    _add_volume(
        deployment,
        V1Volume(name=CACHE_VOLUME_NAME, empty_dir=empty_dir),
        V1VolumeMount(name=CACHE_VOLUME_NAME, mount_path=cache.path),
    )


def format_binary_quantity(value: int) -> str:
    """Format a byte count with the largest binary suffix that divides it exactly."""
    for suffix, multiple in _BINARY_SUFFIXES:
        if value and value % multiple == 0:
            return f"{value // multiple}{suffix}"
    return str(value)


def _setup_lifecycle(spec: NginxSpec, deployment: V1Deployment) -> None:
    post_start_command = list(DEFAULT_POST_START_COMMAND)
    pre_stop = None

    lifecycle = spec.lifecycle
    if lifecycle is not None:
        if lifecycle.preStop is not None and lifecycle.preStop.exec is not None:
            pre_stop = {"exec": {"command": lifecycle.preStop.exec.command}}
        if lifecycle.postStart is not None and lifecycle.postStart.exec is not None:
            user_command = lifecycle.postStart.exec.command
            if user_command:
                post_start_command[-1] = f"{post_start_command[-1]} && {' '.join(user_command)}"

    _nginx_container(deployment).lifecycle = to_model(
        {"postStart": {"exec": {"command": post_start_command}}, "preStop": pre_stop},
        "V1Lifecycle",
    )


def new_service(nginx: Nginx) -> V1Service:
    """Build the Service in front of the nginx pods."""
    spec = apply_defaults(nginx.spec)
    service_spec = spec.service
    service_type = (service_spec.type if service_spec else None) or "ClusterIP"

    labels: dict[str, str] = {}
    annotations: dict[str, str] = {}
    selector: dict[str, str] | None = labels_for_nginx(nginx.name)
    load_balancer_ip = None
    external_traffic_policy = None
    if service_spec is not None:
        labels = dict(service_spec.labels or {})
        annotations = dict(service_spec.annotations or {})
        load_balancer_ip = service_spec.loadBalancerIP or None
        external_traffic_policy = service_spec.externalTrafficPolicy or None
        if not service_spec.uses_pod_selector:
            selector = None

    if service_type == "ClusterIP":
        external_traffic_policy = None

    return V1Service(
        api_version="v1",
        kind="Service",
        metadata=_metadata(
            nginx,
            service_name(nginx.name),
            {**labels, **labels_for_nginx(nginx.name)},
            annotations,
        ),
        spec=V1ServiceSpec(
            type=service_type,
            ports=_service_ports(spec, service_type),
            selector=selector,
            load_balancer_ip=load_balancer_ip,
            external_traffic_policy=external_traffic_policy,
        ),
    )


def _service_ports(spec: NginxSpec, service_type: str) -> list[V1ServicePort]:
    if service_type == "LoadBalancer":
        # Load balancers speaking PROXY protocol target dedicated container ports
        proxy_ports = []
        for port in spec.podTemplate.ports or []:
            if port.get("name") == PROXY_HTTP_PORT_NAME:
                proxy_ports.append(_service_port(PROXY_HTTP_PORT_NAME, SERVICE_HTTP_PORT))
            if port.get("name") == PROXY_HTTPS_PORT_NAME:
                proxy_ports.append(_service_port(PROXY_HTTPS_PORT_NAME, SERVICE_HTTPS_PORT))
        if proxy_ports:
            return proxy_ports

    return [
        _service_port(HTTP_PORT_NAME, SERVICE_HTTP_PORT),
        _service_port(HTTPS_PORT_NAME, SERVICE_HTTPS_PORT),
    ]


def _service_port(name: str, port: int) -> V1ServicePort:
    return V1ServicePort(name=name, protocol="TCP", port=port, target_port=name)


def new_ingress(nginx: Nginx) -> V1Ingress:
    """Build the Ingress routing TLS hosts to the Service."""
    ingress_spec = nginx.spec.ingress
    labels = labels_for_nginx(nginx.name)
    annotations: dict[str, str] = {}
    ingress_class = None
    if ingress_spec is not None:
        labels = {**(ingress_spec.labels or {}), **labels}
        annotations = dict(ingress_spec.annotations or {})
        ingress_class = ingress_spec.ingressClassName

    backend = V1IngressBackend(
        service=V1IngressServiceBackend(
            name=service_name(nginx.name),
            port=V1ServiceBackendPort(name=HTTP_PORT_NAME),
        )
    )

    rules = []
    tls_entries = []
    for tls in nginx.spec.tls or []:
        # A certificate without hosts still gets a catch-all rule
        for host in tls.hosts or [""]:
            rules.append(
                V1IngressRule(
                    host=host,
                    http=V1HTTPIngressRuleValue(
                        paths=[V1HTTPIngressPath(path="/", path_type="Prefix", backend=backend)]
                    ),
                )
            )
        tls_entries.append(V1IngressTLS(secret_name=tls.secretName, hosts=tls.hosts))

    return V1Ingress(
        api_version="networking.k8s.io/v1",
        kind="Ingress",
        metadata=_metadata(nginx, nginx.name, labels, annotations),
        spec=V1IngressSpec(
            ingress_class_name=ingress_class,
            rules=rules or None,
            tls=tls_entries or None,
            default_backend=None if tls_entries else backend,
        ),
    )


def new_ipv6_ingress(nginx: Nginx) -> V1Ingress:
    """Build the companion Ingress bound to a reserved global IPv6 address."""
    ingress = new_ingress(nginx)
    name = ipv6_ingress_name(nginx.name)
    ingress.metadata.name = name
    ingress.metadata.annotations = {**(ingress.metadata.annotations or {}), GCP_STATIC_IP_ANNOTATION: name}
    return ingress

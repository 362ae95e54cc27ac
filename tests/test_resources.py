"""Tests for building Deployments, Services and Ingresses from an Nginx."""

import json
from collections.abc import Callable

from kubernetes.client.models import V1Deployment, V1Ingress, V1Service

from nginx_operator.k8s import GENERATED_FROM_ANNOTATION, fingerprint, to_dict
from nginx_operator.models import Nginx, NginxSpec
from nginx_operator.resources import (
    DEFAULT_POST_START_COMMAND,
    NGINX_ENTRYPOINT,
    apply_defaults,
    format_binary_quantity,
    new_deployment,
    new_ingress,
    new_ipv6_ingress,
    new_service,
)

MakeNginx = Callable[..., Nginx]


def volume(deployment: V1Deployment, name: str):
    return next(v for v in deployment.spec.template.spec.volumes if v.name == name)


def mount(deployment: V1Deployment, name: str):
    container = deployment.spec.template.spec.containers[0]
    return next(m for m in container.volume_mounts if m.name == name)


class TestApplyDefaults:
    """Test spec defaulting."""

    def test_fills_image_and_ports(self) -> None:
        spec = apply_defaults(NginxSpec())

        assert spec.image == "nginx:latest"
        assert spec.podTemplate.ports == [
            {"name": "http", "containerPort": 8080, "protocol": "TCP"},
            {"name": "https", "containerPort": 8443, "protocol": "TCP"},
        ]

    def test_host_network_uses_privileged_ports(self) -> None:
        spec = apply_defaults(NginxSpec.model_validate({"podTemplate": {"hostNetwork": True}}))

        assert [p["containerPort"] for p in spec.podTemplate.ports] == [80, 443]

    def test_keeps_declared_ports(self) -> None:
        spec = apply_defaults(
            NginxSpec.model_validate({"podTemplate": {"ports": [{"name": "http", "containerPort": 9000}]}})
        )

        assert spec.podTemplate.ports[0] == {"name": "http", "containerPort": 9000}
        assert spec.podTemplate.ports[1]["name"] == "https"

    def test_does_not_mutate_input(self) -> None:
        original = NginxSpec(replicas=2)
        apply_defaults(original)

        assert original.image is None
        assert original.podTemplate.ports is None


class TestNewDeployment:
    """Test Deployment synthesis."""

    def test_defaults(self, make_nginx: MakeNginx) -> None:
        nginx = make_nginx()
        result = new_deployment(nginx)

        assert isinstance(result, V1Deployment)
        assert result.metadata.name == "my-nginx"
        assert result.metadata.namespace == "default"
        assert result.metadata.labels == {
            "nginx.tsuru.io/resource-name": "my-nginx",
            "nginx.tsuru.io/app": "nginx",
        }
        assert result.spec.selector.match_labels == result.metadata.labels
        assert result.spec.replicas is None

        owner = result.metadata.owner_references[0]
        assert owner.kind == "Nginx"
        assert owner.api_version == "nginx.tsuru.io/v1alpha1"
        assert owner.controller is True

        pod_spec = result.spec.template.spec
        assert pod_spec.enable_service_links is False
        container = pod_spec.containers[0]
        assert container.name == "nginx"
        assert container.image == "nginx:latest"
        assert container.command == NGINX_ENTRYPOINT
        assert [(p.name, p.container_port, p.protocol) for p in container.ports] == [
            ("http", 8080, "TCP"),
            ("https", 8443, "TCP"),
        ]
        assert container.security_context is None

    def test_fingerprint_is_defaulted_spec(self, make_nginx: MakeNginx) -> None:
        nginx = make_nginx({"replicas": 3})
        result = new_deployment(nginx)

        recorded = result.metadata.annotations[GENERATED_FROM_ANNOTATION]
        assert recorded == fingerprint(apply_defaults(nginx.spec))
        assert json.loads(recorded)["image"] == "nginx:latest"

    def test_readiness_probe_http_only(self, make_nginx: MakeNginx) -> None:
        result = new_deployment(make_nginx())
        probe = result.spec.template.spec.containers[0].readiness_probe

        assert probe.timeout_seconds == 1
        assert to_dict(probe)["exec"]["command"] == [
            "sh",
            "-c",
            "curl -m1 -kfsS -o /dev/null http://localhost:8080",
        ]

    def test_readiness_probe_with_tls(self, make_nginx: MakeNginx) -> None:
        nginx = make_nginx({"healthcheckPath": "/healthz", "tls": [{"secretName": "cert"}]})
        probe = new_deployment(nginx).spec.template.spec.containers[0].readiness_probe

        assert probe.timeout_seconds == 2
        assert to_dict(probe)["exec"]["command"][2] == (
            "curl -m1 -kfsS -o /dev/null http://localhost:8080/healthz && "
            "curl -m1 -kfsS -o /dev/null https://localhost:8443/healthz"
        )

    def test_host_network_rolling_update(self, make_nginx: MakeNginx) -> None:
        result = new_deployment(make_nginx({"replicas": 5, "podTemplate": {"hostNetwork": True}}))

        rolling_update = result.spec.strategy.rolling_update
        assert rolling_update.max_surge == 2
        assert rolling_update.max_unavailable == 2

        container = result.spec.template.spec.containers[0]
        assert container.security_context.capabilities.add == ["NET_BIND_SERVICE"]

    def test_host_network_without_replicas(self, make_nginx: MakeNginx) -> None:
        result = new_deployment(make_nginx({"podTemplate": {"hostNetwork": True}}))

        assert result.spec.strategy.rolling_update.max_unavailable == 1

    def test_explicit_rolling_update_wins(self, make_nginx: MakeNginx) -> None:
        nginx = make_nginx(
            {
                "replicas": 8,
                "podTemplate": {
                    "hostNetwork": True,
                    "rollingUpdate": {"maxSurge": "50%", "maxUnavailable": 0},
                },
            }
        )
        rolling_update = new_deployment(nginx).spec.strategy.rolling_update

        assert rolling_update.max_surge == "50%"
        assert rolling_update.max_unavailable == 0

    def test_low_port_keeps_existing_capabilities(self, make_nginx: MakeNginx) -> None:
        nginx = make_nginx(
            {
                "podTemplate": {
                    "ports": [{"name": "http", "containerPort": 80}],
                    "securityContext": {"capabilities": {"add": ["SYS_PTRACE"]}, "runAsUser": 101},
                }
            }
        )
        context = new_deployment(nginx).spec.template.spec.containers[0].security_context

        assert context.capabilities.add == ["SYS_PTRACE", "NET_BIND_SERVICE"]
        assert context.run_as_user == 101

    def test_tls_volumes(self, make_nginx: MakeNginx) -> None:
        nginx = make_nginx({"tls": [{"secretName": "site-a"}, {"secretName": "site-b"}]})
        result = new_deployment(nginx)

        assert volume(result, "nginx-certs-0").secret.secret_name == "site-a"
        assert volume(result, "nginx-certs-1").secret.optional is False
        assert mount(result, "nginx-certs-1").mount_path == "/etc/nginx/certs/site-b"
        assert mount(result, "nginx-certs-1").read_only is True

    def test_config_map_config(self, make_nginx: MakeNginx) -> None:
        result = new_deployment(make_nginx({"config": {"kind": "ConfigMap", "name": "my-conf"}}))

        assert volume(result, "nginx-config").config_map.name == "my-conf"
        config_mount = mount(result, "nginx-config")
        assert config_mount.mount_path == "/etc/nginx/nginx.conf"
        assert config_mount.sub_path == "nginx.conf"
        assert config_mount.read_only is True

    def test_inline_config(self, make_nginx: MakeNginx) -> None:
        conf = "events {} http { server { listen 8080; } }"
        result = new_deployment(make_nginx({"config": {"kind": "Inline", "value": conf}}))

        annotations = result.spec.template.metadata.annotations
        assert annotations["nginx.tsuru.io/custom-nginx-config"] == conf
        item = volume(result, "nginx-config").downward_api.items[0]
        assert item.path == "nginx.conf"
        assert item.field_ref.field_path == "metadata.annotations['nginx.tsuru.io/custom-nginx-config']"

    def test_extra_files_sorted(self, make_nginx: MakeNginx) -> None:
        nginx = make_nginx(
            {"extraFiles": {"name": "files", "files": {"z.html": "z.html", "a.lua": "lua/a.lua"}}}
        )
        result = new_deployment(nginx)

        items = volume(result, "nginx-extra-files").config_map.items
        assert [(i.key, i.path) for i in items] == [("a.lua", "lua/a.lua"), ("z.html", "z.html")]
        assert mount(result, "nginx-extra-files").mount_path == "/etc/nginx/extra_files"

    def test_cache_volume(self, make_nginx: MakeNginx) -> None:
        nginx = make_nginx({"cache": {"path": "/var/cache/nginx", "inMemory": True, "size": "100Mi"}})
        result = new_deployment(nginx)

        empty_dir = volume(result, "cache-vol").empty_dir
        assert empty_dir.medium == "Memory"
        assert empty_dir.size_limit == "105Mi"
        assert mount(result, "cache-vol").mount_path == "/var/cache/nginx"

    def test_no_cache_without_path(self, make_nginx: MakeNginx) -> None:
        result = new_deployment(make_nginx({"cache": {"size": "1Gi"}}))

        assert all(v.name != "cache-vol" for v in result.spec.template.spec.volumes or [])

    def test_lifecycle(self, make_nginx: MakeNginx) -> None:
        nginx = make_nginx(
            {
                "lifecycle": {
                    "postStart": {"exec": {"command": ["echo", "started"]}},
                    "preStop": {"exec": {"command": ["sleep", "10"]}},
                }
            }
        )
        lifecycle = new_deployment(nginx).spec.template.spec.containers[0].lifecycle

        assert to_dict(lifecycle)["postStart"]["exec"]["command"] == [
            "/bin/sh",
            "-c",
            "nginx -t | tee /tmp/error && touch /tmp/done && echo started",
        ]
        assert to_dict(lifecycle)["preStop"]["exec"]["command"] == ["sleep", "10"]

    def test_default_lifecycle(self, make_nginx: MakeNginx) -> None:
        lifecycle = new_deployment(make_nginx()).spec.template.spec.containers[0].lifecycle

        assert to_dict(lifecycle)["postStart"]["exec"]["command"] == DEFAULT_POST_START_COMMAND
        assert lifecycle.pre_stop is None

    def test_pod_template_fields(self, make_nginx: MakeNginx) -> None:
        nginx = make_nginx(
            {
                "podTemplate": {
                    "labels": {"team": "edge"},
                    "annotations": {"prometheus.io/scrape": "true"},
                    "nodeSelector": {"pool": "edge"},
                    "serviceAccountName": "nginx",
                    "toleration": [{"key": "edge", "operator": "Exists", "effect": "NoSchedule"}],
                    "containers": [{"name": "exporter", "image": "nginx/exporter:1.0"}],
                    "affinity": {
                        "podAntiAffinity": {
                            "preferredDuringSchedulingIgnoredDuringExecution": [
                                {
                                    "weight": 100,
                                    "podAffinityTerm": {"topologyKey": "kubernetes.io/hostname"},
                                }
                            ]
                        }
                    },
                },
                "resources": {"limits": {"cpu": "500m", "memory": "256Mi"}},
            }
        )
        template = new_deployment(nginx).spec.template

        assert template.metadata.labels["team"] == "edge"
        assert template.metadata.labels["nginx.tsuru.io/app"] == "nginx"
        assert template.metadata.annotations == {"prometheus.io/scrape": "true"}
        assert template.spec.node_selector == {"pool": "edge"}
        assert template.spec.service_account_name == "nginx"
        assert template.spec.tolerations[0].key == "edge"
        assert [c.name for c in template.spec.containers] == ["nginx", "exporter"]
        assert template.spec.containers[0].resources.limits == {"cpu": "500m", "memory": "256Mi"}
        anti_affinity = template.spec.affinity.pod_anti_affinity
        term = anti_affinity.preferred_during_scheduling_ignored_during_execution[0]
        assert term.pod_affinity_term.topology_key == "kubernetes.io/hostname"

    def test_deterministic(self, make_nginx: MakeNginx) -> None:
        spec = {"replicas": 2, "tls": [{"secretName": "cert", "hosts": ["a.example.com"]}]}

        first = new_deployment(make_nginx(spec))
        second = new_deployment(make_nginx(spec))

        assert first.to_dict() == second.to_dict()


def test_format_binary_quantity() -> None:
    assert format_binary_quantity(110100480) == "105Mi"
    assert format_binary_quantity(3 * 2**30) == "3Gi"
    assert format_binary_quantity(1001) == "1001"
    assert format_binary_quantity(0) == "0"


class TestNewService:
    """Test Service synthesis."""

    def test_defaults(self, make_nginx: MakeNginx) -> None:
        result = new_service(make_nginx())

        assert isinstance(result, V1Service)
        assert result.metadata.name == "my-nginx-service"
        assert result.spec.type == "ClusterIP"
        assert result.spec.selector == {
            "nginx.tsuru.io/resource-name": "my-nginx",
            "nginx.tsuru.io/app": "nginx",
        }
        assert [(p.name, p.port, p.target_port, p.protocol) for p in result.spec.ports] == [
            ("http", 80, "http", "TCP"),
            ("https", 443, "https", "TCP"),
        ]

    def test_cluster_ip_clears_external_traffic_policy(self, make_nginx: MakeNginx) -> None:
        result = new_service(make_nginx({"service": {"externalTrafficPolicy": "Local"}}))

        assert result.spec.external_traffic_policy is None

    def test_load_balancer(self, make_nginx: MakeNginx) -> None:
        nginx = make_nginx(
            {
                "service": {
                    "type": "LoadBalancer",
                    "loadBalancerIP": "203.0.113.10",
                    "externalTrafficPolicy": "Local",
                    "labels": {"team": "edge"},
                    "annotations": {"cloud.google.com/network-tier": "Premium"},
                }
            }
        )
        result = new_service(nginx)

        assert result.spec.type == "LoadBalancer"
        assert result.spec.load_balancer_ip == "203.0.113.10"
        assert result.spec.external_traffic_policy == "Local"
        assert result.metadata.labels["team"] == "edge"
        assert result.metadata.labels["nginx.tsuru.io/resource-name"] == "my-nginx"
        assert result.metadata.annotations == {"cloud.google.com/network-tier": "Premium"}

    def test_proxy_protocol_ports(self, make_nginx: MakeNginx) -> None:
        nginx = make_nginx(
            {
                "service": {"type": "LoadBalancer"},
                "podTemplate": {
                    "ports": [
                        {"name": "proxy-http", "containerPort": 9080},
                        {"name": "proxy-https", "containerPort": 9443},
                    ]
                },
            }
        )
        ports = new_service(nginx).spec.ports

        assert [(p.name, p.port, p.target_port) for p in ports] == [
            ("proxy-http", 80, "proxy-http"),
            ("proxy-https", 443, "proxy-https"),
        ]

    def test_proxy_ports_ignored_for_cluster_ip(self, make_nginx: MakeNginx) -> None:
        nginx = make_nginx({"podTemplate": {"ports": [{"name": "proxy-http", "containerPort": 9080}]}})

        assert [p.name for p in new_service(nginx).spec.ports] == ["http", "https"]

    def test_without_pod_selector(self, make_nginx: MakeNginx) -> None:
        result = new_service(make_nginx({"service": {"usePodSelector": False}}))

        assert result.spec.selector is None


class TestNewIngress:
    """Test Ingress synthesis."""

    def test_tls_host_rule(self, make_nginx: MakeNginx) -> None:
        nginx = make_nginx({"tls": [{"secretName": "cert", "hosts": ["a.example.com"]}], "ingress": {}})
        result = new_ingress(nginx)

        assert isinstance(result, V1Ingress)
        assert result.metadata.name == "my-nginx"
        assert len(result.spec.rules) == 1
        rule = result.spec.rules[0]
        assert rule.host == "a.example.com"
        path = rule.http.paths[0]
        assert path.path == "/"
        assert path.path_type == "Prefix"
        assert path.backend.service.name == "my-nginx-service"
        assert path.backend.service.port.name == "http"
        assert result.spec.default_backend is None
        assert result.spec.tls[0].secret_name == "cert"
        assert result.spec.tls[0].hosts == ["a.example.com"]

    def test_tls_without_hosts(self, make_nginx: MakeNginx) -> None:
        nginx = make_nginx({"tls": [{"secretName": "cert", "hosts": []}], "ingress": {}})
        result = new_ingress(nginx)

        assert [r.host for r in result.spec.rules] == [""]
        assert result.spec.default_backend is None

    def test_rule_per_host(self, make_nginx: MakeNginx) -> None:
        nginx = make_nginx(
            {
                "tls": [
                    {"secretName": "one", "hosts": ["a.example.com", "b.example.com"]},
                    {"secretName": "two", "hosts": ["c.example.com"]},
                ],
                "ingress": {},
            }
        )
        result = new_ingress(nginx)

        assert [r.host for r in result.spec.rules] == ["a.example.com", "b.example.com", "c.example.com"]
        assert [t.secret_name for t in result.spec.tls] == ["one", "two"]

    def test_default_backend_without_tls(self, make_nginx: MakeNginx) -> None:
        nginx = make_nginx(
            {
                "ingress": {
                    "ingressClassName": "nginx",
                    "annotations": {"example.com/owner": "edge"},
                    "labels": {"team": "edge"},
                }
            }
        )
        result = new_ingress(nginx)

        assert result.spec.rules is None
        assert result.spec.default_backend.service.name == "my-nginx-service"
        assert result.spec.ingress_class_name == "nginx"
        assert result.metadata.annotations == {"example.com/owner": "edge"}
        assert result.metadata.labels["team"] == "edge"
        assert result.metadata.labels["nginx.tsuru.io/app"] == "nginx"

    def test_ipv6_ingress(self, make_nginx: MakeNginx) -> None:
        nginx = make_nginx({"ingress": {"annotations": {"nginx.tsuru.io/allocate-gcp-ipv6": "true"}}})
        result = new_ipv6_ingress(nginx)

        assert result.metadata.name == "my-nginx-ipv6"
        assert result.metadata.annotations["kubernetes.io/ingress.global-static-ip-name"] == "my-nginx-ipv6"
        assert result.metadata.annotations["nginx.tsuru.io/allocate-gcp-ipv6"] == "true"

"""
Configuration step catalog.

Every step is a check and apply pair of shell commands. check exits 0 when the
postcondition holds, so a repeated run over a configured host skips every
step and changes nothing.

Catalog
docker-engine, docker-service, nginx, certbot      every host
max-map-count                                      quality-host only
container-<name>, proxy-<name>                     the host running the service

Containers publish their port on 127.0.0.1 only. The public side is nginx on
port 80, and certbot later adds 443 to the same site.
"""

from __future__ import annotations

import shlex
from typing import Iterable, List, Sequence

import networkx as nx

from toolchain_provisioner.configure.services import SERVICES, ServiceDefinition
from toolchain_provisioner.core.types import ConfigStep

APT_INSTALL = "export DEBIAN_FRONTEND=noninteractive && apt-get update -q && apt-get install -y -q"

SONARQUBE_MAX_MAP_COUNT = 262144

NGINX_SITE = """server {
    listen 80;
    server_name $domain;
    client_max_body_size 1G;

    location / {
        proxy_pass http://127.0.0.1:%(port)d;
        proxy_set_header Host $host;
        proxy_set_header X-Real-IP $remote_addr;
        proxy_set_header X-Forwarded-For $proxy_add_x_forwarded_for;
        proxy_set_header X-Forwarded-Proto $scheme;
        proxy_read_timeout 300;
    }
}
"""


def _base_steps() -> List[ConfigStep]:
    return [
        ConfigStep(
            name="docker-engine",
            check="command -v docker >/dev/null 2>&1",
            apply=f"{APT_INSTALL} docker.io",
            description="Docker engine installed",
        ),
        ConfigStep(
            name="docker-service",
            check="systemctl is-active --quiet docker && systemctl is-enabled --quiet docker",
            apply="systemctl enable --now docker",
            requires=("docker-engine",),
            description="Docker daemon running and enabled at boot",
        ),
        ConfigStep(
            name="nginx",
            check="command -v nginx >/dev/null 2>&1 && systemctl is-active --quiet nginx",
            apply=f"{APT_INSTALL} nginx && systemctl enable --now nginx",
            description="nginx installed and running",
        ),
        ConfigStep(
            name="certbot",
            check="command -v certbot >/dev/null 2>&1",
            apply=f"{APT_INSTALL} certbot python3-certbot-nginx",
            requires=("nginx",),
            description="certbot with the nginx plugin installed",
        ),
        ConfigStep(
            name="max-map-count",
            check=f'test "$(sysctl -n vm.max_map_count)" -ge {SONARQUBE_MAX_MAP_COUNT}',
            apply=(
                f"sysctl -w vm.max_map_count={SONARQUBE_MAX_MAP_COUNT} && "
                f"echo vm.max_map_count={SONARQUBE_MAX_MAP_COUNT} > /etc/sysctl.d/99-sonarqube.conf"
            ),
            roles=("quality-host",),
            description="Kernel mmap limit raised for the embedded Elasticsearch",
        ),
    ]


def container_step(svc: ServiceDefinition) -> ConfigStep:
    requires = ["docker-service"]
    if svc.role == "quality-host":
        requires.append("max-map-count")

    run = (
        f"docker run -d --name {svc.container} --restart unless-stopped "
        f"-p 127.0.0.1:{svc.port}:{svc.port} -v {svc.volume}:{svc.data_path} {svc.image}"
    )
    return ConfigStep(
        name=f"container-{svc.container}",
        check=f"docker inspect -f '{{{{.State.Running}}}}' {svc.container} 2>/dev/null | grep -qx true",
        apply=f"docker rm -f {svc.container} >/dev/null 2>&1; {run}",
        roles=(svc.role,),
        requires=tuple(requires),
        description=f"{svc.display_name} container running",
    )


def proxy_step(svc: ServiceDefinition) -> ConfigStep:
    site = NGINX_SITE % {"port": svc.port}
    available = f"/etc/nginx/sites-available/{svc.container}"
    enabled = f"/etc/nginx/sites-enabled/{svc.container}"
    return ConfigStep(
        name=f"proxy-{svc.container}",
        check=f"grep -qs 'server_name $domain;' {enabled} && nginx -t >/dev/null 2>&1",
        apply=(
            f"printf '%s' {shlex.quote(site)} > {available} && "
            f"ln -sf {available} {enabled} && "
            "rm -f /etc/nginx/sites-enabled/default && "
            "nginx -t && systemctl reload nginx"
        ),
        roles=(svc.role,),
        requires=("nginx", f"container-{svc.container}"),
        description=f"nginx proxies $domain to {svc.display_name}",
    )


def order_steps(steps: Sequence[ConfigStep]) -> List[ConfigStep]:
    """
    Order steps so every step follows the steps it requires.

    Ties keep catalog order. Duplicate names, unknown requirements and cycles
    raise ValueError.
    """

    position: dict[str, int] = {}
    for index, step in enumerate(steps):
        if step.name in position:
            raise ValueError(f"duplicate step name {step.name}")
        position[step.name] = index

    graph = nx.DiGraph()
    graph.add_nodes_from(position)
    for step in steps:
        for req in step.requires:
            if req not in position:
                raise ValueError(f"step {step.name} requires unknown step {req}")
            graph.add_edge(req, step.name)

    try:
        ordered = list(nx.lexicographical_topological_sort(graph, key=lambda name: position[name]))
    except nx.NetworkXUnfeasible as e:
        cycle = " -> ".join(u for u, _ in nx.find_cycle(graph))
        raise ValueError(f"step requirements form a cycle: {cycle}") from e

    by_name = {s.name: s for s in steps}
    return [by_name[name] for name in ordered]


def build_catalog(services: Iterable[ServiceDefinition] = SERVICES) -> List[ConfigStep]:
    steps = _base_steps()
    for svc in services:
        steps.append(container_step(svc))
        steps.append(proxy_step(svc))
    return order_steps(steps)


def steps_for_role(steps: Sequence[ConfigStep], role: str) -> List[ConfigStep]:
    return [s for s in steps if s.applies_to(role)]

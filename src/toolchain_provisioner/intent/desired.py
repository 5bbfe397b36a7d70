"""
Desired state builder.

Turns validated settings into the list of ResourceSpec objects the planner
reconciles against the cloud:

one network
two ingress firewall rules, ssh and web
one instance per service role

Shapes use plain values and sorted lists so they compare equal to what the
provider adapter reads back.
"""

from __future__ import annotations

from toolchain_provisioner.config.settings import ProvisionerSettings
from toolchain_provisioner.configure.services import SERVICES, ServiceDefinition
from toolchain_provisioner.core.types import ResourceKind, ResourceSpec

MANAGED_LABEL = "managed-by"
MANAGED_VALUE = "toolchain-provisioner"
INSTANCE_TAG = "toolchain"

FIREWALL_RULES = (
    ("allow-ssh", ["22"]),
    ("allow-web", ["443", "80"]),
)


def managed_labels() -> dict[str, str]:
    return {MANAGED_LABEL: MANAGED_VALUE}


def _network_spec(settings: ProvisionerSettings) -> ResourceSpec:
    return ResourceSpec(
        kind=ResourceKind.network,
        name=settings.network_name,
        shape={"auto_create_subnetworks": True},
        labels=managed_labels(),
    )


def _firewall_specs(settings: ProvisionerSettings) -> list[ResourceSpec]:
    specs: list[ResourceSpec] = []
    for suffix, ports in FIREWALL_RULES:
        specs.append(
            ResourceSpec(
                kind=ResourceKind.firewall_rule,
                name=f"{settings.network_name}-{suffix}",
                shape={
                    "network": settings.network_name,
                    "ports": sorted(ports),
                    "source_ranges": ["0.0.0.0/0"],
                    "target_tags": [INSTANCE_TAG],
                },
                labels=managed_labels(),
                depends_on=(settings.network_name,),
            )
        )
    return specs


def _instance_spec(
    settings: ProvisionerSettings,
    service: ServiceDefinition,
    ssh_public_key: str,
) -> ResourceSpec:
    labels = managed_labels()
    labels["role"] = service.role
    return ResourceSpec(
        kind=ResourceKind.instance,
        name=service.instance_name,
        role=service.role,
        shape={
            "zone": settings.zone,
            "machine_type": settings.machine_type,
            "boot_disk_size": settings.boot_disk_size,
            "network": settings.network_name,
            "tags": [INSTANCE_TAG],
        },
        labels=labels,
        options={
            "image": settings.image,
            "ssh_user": settings.ssh_user,
            "ssh_public_key": ssh_public_key,
        },
        depends_on=(settings.network_name,),
    )


def build_desired_resources(
    settings: ProvisionerSettings,
    ssh_public_key: str | None = None,
) -> list[ResourceSpec]:
    """
    Return every resource the toolchain needs, network first.

    The ssh public key is read from settings unless given. Teardown passes an
    empty key because deletes never use creation options.
    """
    if ssh_public_key is None:
        ssh_public_key = settings.ssh_public_key()
    resources = [_network_spec(settings)]
    resources.extend(_firewall_specs(settings))
    resources.extend(_instance_spec(settings, svc, ssh_public_key) for svc in SERVICES)
    return resources


def desired_instances(resources: list[ResourceSpec]) -> list[ResourceSpec]:
    return [r for r in resources if r.kind == ResourceKind.instance]

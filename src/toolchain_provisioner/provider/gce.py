"""
Google Compute Engine provider.

This adapter implements ProviderClient on google-cloud-compute.

Mapping
network        -> compute_v1 Network, auto mode subnets
firewall_rule  -> compute_v1 Firewall, tcp ingress
instance       -> compute_v1 Instance with a boot disk, one external NAT
                  address, network tags, labels and ssh-keys metadata

Networks and firewalls do not support labels, so ownership is recorded in
their description as "managed-by=<value>" and read back as a label. A firewall
description can be patched to adopt an existing rule. A network description is
fixed at creation, so an existing network without the marker is used as is.

Shapes read back from the API are normalized to the same plain values the
desired state builder uses: resource URLs are reduced to their last path
segment and lists are sorted.
"""

from __future__ import annotations

import contextlib
import logging
from pathlib import Path
from typing import Any, Iterator, Optional

from google.api_core import exceptions as api_exceptions
from google.cloud import compute_v1
from google.oauth2 import service_account

from toolchain_provisioner.core.types import ResourceKind, ResourceSpec, ResourceState
from toolchain_provisioner.intent.desired import MANAGED_LABEL, MANAGED_VALUE
from toolchain_provisioner.provider.base import (
    OperationHandle,
    OperationState,
    OperationStatus,
    ProviderClient,
    ProviderError,
    TransientProviderError,
)

logger = logging.getLogger(__name__)

_TRANSIENT_ERRORS = (
    api_exceptions.TooManyRequests,
    api_exceptions.ServiceUnavailable,
    api_exceptions.InternalServerError,
    api_exceptions.BadGateway,
    api_exceptions.GatewayTimeout,
    api_exceptions.DeadlineExceeded,
)

_MARKER = f"{MANAGED_LABEL}={MANAGED_VALUE}"


def _last_segment(url: str) -> str:
    return url.rsplit("/", 1)[-1] if url else ""


def _description_labels(description: str) -> dict[str, str]:
    labels: dict[str, str] = {}
    for token in (description or "").split():
        if "=" in token:
            key, value = token.split("=", 1)
            labels[key] = value
    return labels


def _merge_description(description: str, labels: dict[str, str]) -> str:
    """Rewrite the k=v tokens of a description, keeping any free text first."""
    words = [t for t in (description or "").split() if "=" not in t]
    merged = _description_labels(description)
    merged.update(labels)
    return " ".join(words + [f"{k}={v}" for k, v in sorted(merged.items())])


@contextlib.contextmanager
def _api_errors(description: str) -> Iterator[None]:
    """Translate google api errors into provider errors."""
    try:
        yield
    except _TRANSIENT_ERRORS as e:
        raise TransientProviderError(f"{description}: {e.message}") from e
    except api_exceptions.GoogleAPICallError as e:
        raise ProviderError(f"{description}: {e.message}") from e


class GceProvider(ProviderClient):
    """
    Compute Engine adapter.

    Clients can be injected for tests. Otherwise each one is built on first
    use from the service account file, or from application default
    credentials when no file is configured.
    """

    fixed_label_kinds = frozenset({ResourceKind.network})

    def __init__(
        self,
        project_id: str,
        zone: str,
        credentials_file: Optional[Path] = None,
        networks: Any = None,
        firewalls: Any = None,
        instances: Any = None,
    ) -> None:
        self._project = project_id
        self._zone = zone
        self._credentials_file = credentials_file
        self._networks = networks
        self._firewalls = firewalls
        self._instances = instances

    def _credentials(self) -> Any:
        if self._credentials_file is None:
            return None
        return service_account.Credentials.from_service_account_file(str(self._credentials_file))

    @property
    def networks(self) -> compute_v1.NetworksClient:
        if self._networks is None:
            self._networks = compute_v1.NetworksClient(credentials=self._credentials())
        return self._networks

    @property
    def firewalls(self) -> compute_v1.FirewallsClient:
        if self._firewalls is None:
            self._firewalls = compute_v1.FirewallsClient(credentials=self._credentials())
        return self._firewalls

    @property
    def instances(self) -> compute_v1.InstancesClient:
        if self._instances is None:
            self._instances = compute_v1.InstancesClient(credentials=self._credentials())
        return self._instances

    # Reads

    def get_resource_state(self, kind: ResourceKind, name: str) -> ResourceState:
        with _api_errors(f"get {kind} {name}"):
            try:
                if kind == ResourceKind.network:
                    return self._network_state(self.networks.get(project=self._project, network=name))
                if kind == ResourceKind.firewall_rule:
                    return self._firewall_state(self.firewalls.get(project=self._project, firewall=name))
                return self._instance_state(
                    self.instances.get(project=self._project, zone=self._zone, instance=name)
                )
            except api_exceptions.NotFound:
                return ResourceState(kind=kind, name=name, exists=False)

    def list_resources(self) -> list[ResourceState]:
        states: list[ResourceState] = []
        with _api_errors("list resources"):
            for net in self.networks.list(project=self._project):
                states.append(self._network_state(net))
            for fw in self.firewalls.list(project=self._project):
                states.append(self._firewall_state(fw))
            for inst in self.instances.list(project=self._project, zone=self._zone):
                states.append(self._instance_state(inst))

        return [s for s in states if s.labels.get(MANAGED_LABEL) == MANAGED_VALUE]

    def _network_state(self, net: compute_v1.Network) -> ResourceState:
        return ResourceState(
            kind=ResourceKind.network,
            name=net.name,
            shape={"auto_create_subnetworks": bool(net.auto_create_subnetworks)},
            labels=_description_labels(net.description),
            provider_id=str(net.id),
        )

    def _firewall_state(self, fw: compute_v1.Firewall) -> ResourceState:
        ports = sorted(p for allowed in fw.allowed for p in allowed.ports)
        return ResourceState(
            kind=ResourceKind.firewall_rule,
            name=fw.name,
            shape={
                "network": _last_segment(fw.network),
                "ports": ports,
                "source_ranges": sorted(fw.source_ranges),
                "target_tags": sorted(fw.target_tags),
            },
            labels=_description_labels(fw.description),
            provider_id=str(fw.id),
        )

    def _instance_state(self, inst: compute_v1.Instance) -> ResourceState:
        boot_disk_size = 0
        for disk in inst.disks:
            if disk.boot:
                boot_disk_size = int(disk.disk_size_gb)

        network = ""
        address = ""
        if inst.network_interfaces:
            nic = inst.network_interfaces[0]
            network = _last_segment(nic.network)
            for access in nic.access_configs:
                if access.nat_i_p:
                    address = access.nat_i_p
                    break

        return ResourceState(
            kind=ResourceKind.instance,
            name=inst.name,
            shape={
                "zone": _last_segment(inst.zone),
                "machine_type": _last_segment(inst.machine_type),
                "boot_disk_size": boot_disk_size,
                "network": network,
                "tags": sorted(inst.tags.items),
            },
            labels=dict(inst.labels),
            address=address,
            provider_id=str(inst.id),
        )

    # Mutations

    def create_resource(self, spec: ResourceSpec) -> OperationHandle:
        description = f"create {spec.kind} {spec.name}"
        with _api_errors(description):
            if spec.kind == ResourceKind.network:
                op = self.networks.insert(
                    project=self._project,
                    network_resource=compute_v1.Network(
                        name=spec.name,
                        auto_create_subnetworks=bool(spec.shape.get("auto_create_subnetworks", True)),
                        description=_MARKER,
                    ),
                )
            elif spec.kind == ResourceKind.firewall_rule:
                op = self.firewalls.insert(project=self._project, firewall_resource=self._firewall(spec))
            else:
                op = self.instances.insert(
                    project=self._project,
                    zone=self._zone,
                    instance_resource=self._instance(spec),
                )

        logger.debug("submitted %s as %s", description, op.name)
        return OperationHandle(operation_id=op.name, description=description, raw=op)

    def _firewall(self, spec: ResourceSpec) -> compute_v1.Firewall:
        return compute_v1.Firewall(
            name=spec.name,
            network=f"global/networks/{spec.shape['network']}",
            direction="INGRESS",
            allowed=[compute_v1.Allowed(I_p_protocol="tcp", ports=list(spec.shape["ports"]))],
            source_ranges=list(spec.shape["source_ranges"]),
            target_tags=list(spec.shape["target_tags"]),
            description=_MARKER,
        )

    def _instance(self, spec: ResourceSpec) -> compute_v1.Instance:
        shape = spec.shape
        boot_disk = compute_v1.AttachedDisk(
            boot=True,
            auto_delete=True,
            initialize_params=compute_v1.AttachedDiskInitializeParams(
                source_image=spec.options["image"],
                disk_size_gb=int(shape["boot_disk_size"]),
            ),
        )
        nic = compute_v1.NetworkInterface(
            network=f"global/networks/{shape['network']}",
            access_configs=[compute_v1.AccessConfig(name="External NAT", type_="ONE_TO_ONE_NAT")],
        )
        ssh_keys = f"{spec.options['ssh_user']}:{spec.options['ssh_public_key']}"
        return compute_v1.Instance(
            name=spec.name,
            machine_type=f"zones/{shape['zone']}/machineTypes/{shape['machine_type']}",
            disks=[boot_disk],
            network_interfaces=[nic],
            tags=compute_v1.Tags(items=list(shape["tags"])),
            labels=dict(spec.labels),
            metadata=compute_v1.Metadata(items=[compute_v1.Items(key="ssh-keys", value=ssh_keys)]),
        )

    def update_resource(self, spec: ResourceSpec) -> OperationHandle:
        """
        Merge the desired labels into the resource.

        Instances carry real labels. Firewall rules carry them as k=v tokens
        in the description, which can be patched. Network descriptions cannot
        change after creation, see fixed_label_kinds.
        """
        description = f"update {spec.kind} {spec.name}"
        if spec.kind in self.fixed_label_kinds:
            raise ProviderError(f"{description}: {spec.kind} ownership is fixed at creation")

        with _api_errors(description):
            if spec.kind == ResourceKind.firewall_rule:
                current = self.firewalls.get(project=self._project, firewall=spec.name)
                op = self.firewalls.patch(
                    project=self._project,
                    firewall=spec.name,
                    firewall_resource=compute_v1.Firewall(
                        description=_merge_description(current.description, spec.labels),
                    ),
                )
            else:
                current = self.instances.get(project=self._project, zone=self._zone, instance=spec.name)
                labels = dict(current.labels)
                labels.update(spec.labels)
                op = self.instances.set_labels(
                    project=self._project,
                    zone=self._zone,
                    instance=spec.name,
                    instances_set_labels_request_resource=compute_v1.InstancesSetLabelsRequest(
                        label_fingerprint=current.label_fingerprint,
                        labels=labels,
                    ),
                )
        return OperationHandle(operation_id=op.name, description=description, raw=op)

    def delete_resource(self, kind: ResourceKind, name: str) -> OperationHandle:
        description = f"delete {kind} {name}"
        with _api_errors(description):
            if kind == ResourceKind.network:
                op = self.networks.delete(project=self._project, network=name)
            elif kind == ResourceKind.firewall_rule:
                op = self.firewalls.delete(project=self._project, firewall=name)
            else:
                op = self.instances.delete(project=self._project, zone=self._zone, instance=name)
        return OperationHandle(operation_id=op.name, description=description, raw=op)

    def operation_status(self, handle: OperationHandle) -> OperationStatus:
        op = handle.raw
        with _api_errors(f"poll {handle.description}"):
            if not op.done():
                return OperationStatus(state=OperationState.pending)
        if op.error_code:
            return OperationStatus(state=OperationState.failed, error=f"{op.error_code}: {op.error_message}")
        return OperationStatus(state=OperationState.succeeded)

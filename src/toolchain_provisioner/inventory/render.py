"""
Human readable views of the inventory.

render_info
The host table, the DNS A records the operator has to create and the next
steps. Written to vm-info.txt after provisioning.

render_ini
An Ansible style inventory.ini, one group per role, for operators who keep
running playbooks against the hosts.
"""

from __future__ import annotations

from toolchain_provisioner.configure.services import service_for_role
from toolchain_provisioner.core.types import Inventory


def render_info(inventory: Inventory) -> str:
    lines: list[str] = []
    lines.append(f"Project: {inventory.project_id}")
    lines.append(f"Zone:    {inventory.zone}")
    if inventory.created_at:
        lines.append(f"Created: {inventory.created_at}")
    lines.append("")

    lines.append("Hosts")
    for role in inventory.roles():
        host = inventory.hosts[role]
        svc = service_for_role(role)
        label = svc.display_name if svc else role
        lines.append(f"  {label:<10} {host.name:<18} {host.address:<16} {host.domain}")
    lines.append("")

    lines.append("DNS records to create")
    for role in inventory.roles():
        host = inventory.hosts[role]
        if host.domain:
            lines.append(f"  {host.domain}  A  {host.address}")
    lines.append("")

    lines.append("Next steps")
    lines.append("  1. Create the DNS records above")
    lines.append("  2. Wait for DNS propagation (5-60 minutes)")
    lines.append("  3. Run: toolchain-provisioner issue-certificates")
    lines.append("  4. Run: toolchain-provisioner credentials")
    if inventory.hosts:
        user = next(iter(inventory.hosts.values())).ssh_user
        if user:
            lines.append("")
            lines.append("SSH")
            for role in inventory.roles():
                host = inventory.hosts[role]
                lines.append(f"  ssh {user}@{host.address}")

    return "\n".join(lines) + "\n"


def render_ini(inventory: Inventory) -> str:
    lines: list[str] = []
    for role in inventory.roles():
        host = inventory.hosts[role]
        group = role.replace("-", "_")
        lines.append(f"[{group}]")
        lines.append(
            f"{host.name} ansible_host={host.address} ansible_user={host.ssh_user} domain={host.domain}"
        )
        lines.append("")

    lines.append("[all:vars]")
    lines.append("ansible_python_interpreter=/usr/bin/python3")
    return "\n".join(lines) + "\n"

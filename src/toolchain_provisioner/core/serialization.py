from __future__ import annotations

from dataclasses import asdict
from typing import Any

from toolchain_provisioner.core.types import (
    ConfigReport,
    HostRecord,
    Inventory,
    Plan,
)


def _normalize(obj: Any) -> Any:
    if hasattr(obj, "value"):
        return obj.value
    if isinstance(obj, dict):
        return {str(k): _normalize(v) for k, v in obj.items()}
    if isinstance(obj, (list, tuple)):
        return [_normalize(v) for v in obj]
    return obj


def to_json_safe_dict(obj: Any) -> dict[str, Any]:
    """
    Convert a dataclass object into a JSON safe dict.

    Enums collapse to their values and tuples become lists.
    """
    raw = asdict(obj)
    normalized = _normalize(raw)
    if not isinstance(normalized, dict):
        raise TypeError("expected dict after normalization")
    return normalized


def inventory_to_dict(inventory: Inventory) -> dict[str, Any]:
    """
    Inventory file shape.

    hosts is written as a list sorted by role so diffs of the file stay stable.
    """
    return {
        "project_id": inventory.project_id,
        "zone": inventory.zone,
        "created_at": inventory.created_at,
        "hosts": [to_json_safe_dict(inventory.hosts[role]) for role in inventory.roles()],
    }


def inventory_from_dict(data: dict[str, Any]) -> Inventory:
    hosts: dict[str, HostRecord] = {}
    for raw in data.get("hosts", []) or []:
        if not isinstance(raw, dict):
            continue
        host = HostRecord(
            role=str(raw["role"]),
            name=str(raw.get("name", "")),
            address=str(raw.get("address", "")),
            ssh_user=str(raw.get("ssh_user", "")),
            domain=str(raw.get("domain", "")),
        )
        hosts[host.role] = host

    return Inventory(
        project_id=str(data.get("project_id", "")),
        zone=str(data.get("zone", "")),
        hosts=hosts,
        created_at=str(data.get("created_at", "")),
    )


def plan_to_dict(plan: Plan) -> dict[str, Any]:
    return {
        "plan_id": plan.plan_id,
        "mode": plan.mode.value,
        "explanation": plan.explanation,
        "operations": [
            {
                "kind": op.kind.value,
                "resource_kind": op.resource_kind.value,
                "name": op.name,
                "reason": op.reason,
            }
            for op in plan.operations
        ],
    }


def report_to_dict(report: ConfigReport) -> dict[str, Any]:
    """
    ConfigReport transport shape.

    Built by hand instead of asdict because asdict deep copies the stored
    exceptions, and our exceptions do not rebuild from their args.
    """
    hosts = []
    for h in report.hosts:
        hosts.append(
            {
                "role": h.role,
                "host": h.host,
                "ok": h.ok,
                "error": str(h.error) if h.error is not None else None,
                "outcomes": [
                    {"step": o.step, "status": o.status.value, "detail": o.detail} for o in h.outcomes
                ],
            }
        )
    return {"ok": report.ok, "hosts": hosts}

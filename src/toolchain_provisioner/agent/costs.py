"""
Monthly cost estimate.

List prices in USD for us-central1, on demand, 730 hours per month. They are
an order of magnitude guide, not a quote. Billing is the source of truth.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List

HOURS_PER_MONTH = 730

MACHINE_MONTHLY_USD = {
    "e2-micro": 6.11,
    "e2-small": 12.23,
    "e2-medium": 24.46,
    "e2-standard-2": 48.91,
    "e2-standard-4": 97.83,
    "e2-standard-8": 195.66,
    "n1-standard-1": 24.27,
    "n1-standard-2": 48.55,
    "n1-standard-4": 97.09,
    "n2-standard-2": 56.72,
    "n2-standard-4": 113.44,
}

STANDARD_DISK_USD_PER_GB = 0.04
EXTERNAL_IP_USD_PER_HOUR = 0.005


@dataclass
class CostLine:
    item: str
    quantity: int
    unit_monthly: float

    @property
    def monthly(self) -> float:
        return round(self.quantity * self.unit_monthly, 2)


@dataclass
class CostEstimate:
    lines: List[CostLine] = field(default_factory=list)
    notes: List[str] = field(default_factory=list)

    @property
    def total(self) -> float:
        return round(sum(line.monthly for line in self.lines), 2)


def estimate_costs(machine_type: str, boot_disk_size: int, instances: int = 3) -> CostEstimate:
    estimate = CostEstimate()

    machine_price = MACHINE_MONTHLY_USD.get(machine_type)
    if machine_price is None:
        machine_price = 0.0
        estimate.notes.append(f"no list price for {machine_type}; instance cost excluded from the total")
    estimate.lines.append(CostLine(f"{machine_type} instance", instances, machine_price))
    estimate.lines.append(
        CostLine(f"{boot_disk_size}GB standard disk", instances, round(boot_disk_size * STANDARD_DISK_USD_PER_GB, 2))
    )
    estimate.lines.append(
        CostLine("external IP address", instances, round(EXTERNAL_IP_USD_PER_HOUR * HOURS_PER_MONTH, 2))
    )

    if machine_price and machine_type != "e2-medium":
        cheaper = estimate_costs("e2-medium", boot_disk_size, instances)
        if cheaper.total < estimate.total:
            estimate.notes.append(f"e2-medium would cost about ${cheaper.total:.2f}/month")
    estimate.notes.append("spot instances cut instance cost by up to 60-91%")
    estimate.notes.append("stopped instances only bill for disks and reserved addresses")
    return estimate


def render_costs(estimate: CostEstimate) -> str:
    lines = ["Monthly cost estimate (us-central1, USD)", ""]
    for line in estimate.lines:
        lines.append(f"  {line.quantity}x {line.item:<28} ${line.monthly:>8.2f}")
    lines.append(f"  {'Total':<31} ${estimate.total:>8.2f}")
    if estimate.notes:
        lines.append("")
        lines.extend(f"  - {note}" for note in estimate.notes)
    return "\n".join(lines) + "\n"

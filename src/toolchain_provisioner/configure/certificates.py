"""
TLS certificate issuance.

Certificates come from an ACME authority through certbot's nginx plugin. The
authority validates a domain by connecting to it, so a domain whose A record
is missing or still points elsewhere fails validation and counts against the
authority's rate limits.

For that reason every domain is resolved before anything else happens. A
single mismatch raises PreconditionUnmet and no host is contacted.
"""

from __future__ import annotations

import logging
import shlex
import socket
import time
from typing import Callable, List, Optional

from toolchain_provisioner.configure.configurator import Configurator, ConfiguratorConfig
from toolchain_provisioner.core.errors import PreconditionUnmet
from toolchain_provisioner.core.types import ConfigReport, ConfigStep, HostRecord, Inventory
from toolchain_provisioner.remote.base import ChannelFactory

logger = logging.getLogger(__name__)

Resolver = Callable[[str], List[str]]


def system_resolver(name: str) -> List[str]:
    return list(socket.gethostbyname_ex(name)[2])


def resolve_addresses(domain: str, resolver: Resolver) -> List[str]:
    """Resolve domain to its IPv4 addresses. An unresolvable name yields []."""
    try:
        return sorted(resolver(domain))
    except OSError as e:
        logger.debug("resolving %s failed: %s", domain, e)
        return []


class CertificateIssuer:
    def __init__(
        self,
        channels: ChannelFactory,
        admin_email: str,
        resolver: Optional[Resolver] = None,
        config: ConfiguratorConfig | None = None,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._admin_email = admin_email
        self._resolver = resolver or system_resolver
        self._configurator = Configurator(channels, config, sleep=sleep, clock=clock)

    def certificate_step(self) -> ConfigStep:
        return ConfigStep(
            name="certificate",
            check="certbot certificates --cert-name $domain 2>/dev/null | grep -q 'Certificate Name: $domain'",
            apply=(
                "certbot --nginx -d $domain "
                f"--email {shlex.quote(self._admin_email)} "
                "--agree-tos --non-interactive --redirect"
            ),
            description="TLS certificate issued for $domain",
        )

    def precheck(self, inventory: Inventory) -> List[HostRecord]:
        """Return the hosts to certify, or raise PreconditionUnmet naming every bad domain."""
        hosts = [inventory.hosts[role] for role in inventory.roles() if inventory.hosts[role].domain]
        problems: list[str] = []
        for host in hosts:
            addresses = resolve_addresses(host.domain, self._resolver)
            if not addresses:
                problems.append(f"{host.domain} does not resolve, expected {host.address}")
            elif host.address not in addresses:
                problems.append(f"{host.domain} resolves to {', '.join(addresses)}, expected {host.address}")

        if problems:
            raise PreconditionUnmet(
                "; ".join(problems),
                subject="dns",
                remediation="create the A records shown by info and verify DNS propagation before issuing certificates",
            )
        return hosts

    def issue(self, inventory: Inventory) -> ConfigReport:
        hosts = self.precheck(inventory)
        scoped = Inventory(
            project_id=inventory.project_id,
            zone=inventory.zone,
            hosts={h.role: h for h in hosts},
            created_at=inventory.created_at,
        )
        logger.info("issuing certificates for %s", ", ".join(h.domain for h in hosts))
        return self._configurator.configure(scoped, [self.certificate_step()])

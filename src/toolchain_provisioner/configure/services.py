"""
Service catalog.

One entry per host role. Each service runs as a single Docker container that
listens on localhost and is published through nginx on its public domain.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Tuple


@dataclass(frozen=True)
class ServiceDefinition:
    """
    A service and the host that runs it.

    domain_key
    Settings key holding the public DNS name of the service.

    credential_path
    File inside the running container that holds the generated initial admin
    password. None when the service ships with fixed default credentials.

    default_credentials
    Shown to operators when there is no credential file.
    """

    role: str
    instance_name: str
    display_name: str
    container: str
    image: str
    port: int
    volume: str
    data_path: str
    domain_key: str
    credential_path: Optional[str] = None
    default_credentials: Optional[str] = None


SERVICES: Tuple[ServiceDefinition, ...] = (
    ServiceDefinition(
        role="ci-host",
        instance_name="jenkins-server",
        display_name="Jenkins",
        container="jenkins",
        image="jenkins/jenkins:lts",
        port=8080,
        volume="jenkins_home",
        data_path="/var/jenkins_home",
        domain_key="jenkins_domain",
        credential_path="/var/jenkins_home/secrets/initialAdminPassword",
    ),
    ServiceDefinition(
        role="quality-host",
        instance_name="sonarqube-server",
        display_name="SonarQube",
        container="sonarqube",
        image="sonarqube:lts-community",
        port=9000,
        volume="sonarqube_data",
        data_path="/opt/sonarqube/data",
        domain_key="sonarqube_domain",
        default_credentials="admin / admin (change on first login)",
    ),
    ServiceDefinition(
        role="artifact-host",
        instance_name="nexus-server",
        display_name="Nexus",
        container="nexus-docker",
        image="sonatype/nexus3:latest",
        port=8081,
        volume="nexus_data",
        data_path="/nexus-data",
        domain_key="nexus_domain",
        credential_path="/nexus-data/admin.password",
    ),
)


def service_for_role(role: str) -> Optional[ServiceDefinition]:
    for svc in SERVICES:
        if svc.role == role:
            return svc
    return None

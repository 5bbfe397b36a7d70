"""
toolchain_provisioner

This package provisions and configures the hosts of a small CI toolchain:
a Jenkins CI server, a SonarQube code quality server and a Nexus artifact
repository, each behind an nginx reverse proxy with a TLS certificate.

We keep modules small and well separated:
core contains shared data structures and errors
config loads the declarative settings file
intent turns settings into desired cloud resources
planner diffs desired against observed state and orders the operations
provider talks to the cloud control API
execution applies plans with retries and polling
inventory persists the role to address record
remote opens command channels to provisioned hosts
configure applies idempotent configuration steps and issues certificates
agent wires everything into management commands
"""

__version__ = "0.1.0"

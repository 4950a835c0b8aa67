"""Label scheme for every resource devenv creates.

Containers, volumes and networks are never tracked by a stored id; they are
found again by these labels. Anything without ``MANAGED=true`` is not ours.
"""

from __future__ import annotations

LABEL_NAMESPACE = "io.devenv"

MANAGED = f"{LABEL_NAMESPACE}.managed"
TYPE = f"{LABEL_NAMESPACE}.type"
DESCRIPTION = f"{LABEL_NAMESPACE}.description"

SERVICE_ID = f"{LABEL_NAMESPACE}.service-id"
SERVICE_TYPE = f"{LABEL_NAMESPACE}.service-type"

PROJECT_ID = f"{LABEL_NAMESPACE}.project-id"
PROJECT_NAME = f"{LABEL_NAMESPACE}.project-name"

OPERATION = f"{LABEL_NAMESPACE}.operation"
VOLUME = f"{LABEL_NAMESPACE}.volume"
EPHEMERAL = f"{LABEL_NAMESPACE}.ephemeral"

# Resource types (value of the TYPE label)
SERVICE_CONTAINER = "service-container"
SERVICE_VOLUME = "service-volume"
PROJECT_CONTAINER = "project-container"
PROJECT_VOLUME = "project-volume"
HELPER_CONTAINER = "helper-container"
TUNNEL_CONTAINER = "tunnel-container"
NETWORK = "network"

CONTAINER_KINDS = frozenset({SERVICE_CONTAINER, PROJECT_CONTAINER, HELPER_CONTAINER, TUNNEL_CONTAINER})

# Helper operations (value of the OPERATION label)
VOLUME_COPY = "volume-copy"
VOLUME_SYNC_TO = "volume-sync-to"
VOLUME_SYNC_FROM = "volume-sync-from"

HELPER_OPERATIONS = frozenset({VOLUME_COPY, VOLUME_SYNC_TO, VOLUME_SYNC_FROM})


def _require(value: str, what: str) -> None:
    if not value or not isinstance(value, str):
        raise ValueError(f"{what} is required and must be a non-empty string")


def label_filter(key: str, value: str) -> str:
    """Docker API filter syntax for a label pair."""
    return f"{key}={value}"


def is_managed(labels: dict[str, str] | None) -> bool:
    return bool(labels) and labels.get(MANAGED) == "true"


def owner_label_key(kind: str) -> str:
    """Label that carries the owner id for a resource kind."""
    if kind in (SERVICE_CONTAINER, SERVICE_VOLUME):
        return SERVICE_ID
    if kind in (PROJECT_CONTAINER, PROJECT_VOLUME, HELPER_CONTAINER, TUNNEL_CONTAINER):
        return PROJECT_ID
    raise ValueError(f"Unknown resource kind: {kind!r}")


def owner_of(labels: dict[str, str]) -> str | None:
    return labels.get(PROJECT_ID) or labels.get(SERVICE_ID)


def service_container_labels(service_id: str, service_type: str) -> dict[str, str]:
    _require(service_id, "Service ID")
    _require(service_type, "Service type")
    return {
        MANAGED: "true",
        TYPE: SERVICE_CONTAINER,
        SERVICE_ID: service_id,
        SERVICE_TYPE: service_type,
    }


def service_volume_labels(service_id: str, volume_name: str) -> dict[str, str]:
    _require(service_id, "Service ID")
    _require(volume_name, "Volume name")
    return {
        MANAGED: "true",
        TYPE: SERVICE_VOLUME,
        SERVICE_ID: service_id,
        VOLUME: volume_name,
    }


def project_container_labels(project_id: str, project_name: str) -> dict[str, str]:
    _require(project_id, "Project ID")
    _require(project_name, "Project name")
    return {
        MANAGED: "true",
        TYPE: PROJECT_CONTAINER,
        PROJECT_ID: project_id,
        PROJECT_NAME: project_name,
    }


def project_volume_labels(project_id: str, volume_name: str) -> dict[str, str]:
    _require(project_id, "Project ID")
    _require(volume_name, "Volume name")
    return {
        MANAGED: "true",
        TYPE: PROJECT_VOLUME,
        PROJECT_ID: project_id,
        VOLUME: volume_name,
    }


def helper_container_labels(operation: str, volume_name: str, project_id: str) -> dict[str, str]:
    _require(operation, "Operation")
    _require(volume_name, "Volume name")
    _require(project_id, "Project ID")
    if operation not in HELPER_OPERATIONS:
        raise ValueError(f"Unknown helper operation: {operation!r}")
    return {
        MANAGED: "true",
        TYPE: HELPER_CONTAINER,
        OPERATION: operation,
        VOLUME: volume_name,
        PROJECT_ID: project_id,
        EPHEMERAL: "true",
    }


def tunnel_container_labels(project_id: str) -> dict[str, str]:
    _require(project_id, "Project ID")
    return {
        MANAGED: "true",
        TYPE: TUNNEL_CONTAINER,
        PROJECT_ID: project_id,
    }


def network_labels() -> dict[str, str]:
    return {
        MANAGED: "true",
        TYPE: NETWORK,
        DESCRIPTION: "Shared network for devenv services and projects",
    }

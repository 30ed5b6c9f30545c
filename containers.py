"""
Container snapshots, opt-in filtering and Compose grouping.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, List, Tuple

logger = logging.getLogger(__name__)

# Must equal "true" exactly for a container to be considered
ENABLE_LABEL = "io.repull.enable"
# Baked into repull's own image
SELF_LABEL = "io.repull.app"

COMPOSE_PROJECT_LABEL = "com.docker.compose.project"
COMPOSE_SERVICE_LABEL = "com.docker.compose.service"


def short_id(container_id: str) -> str:
    """First 12 characters of a container id, or the whole id if shorter."""
    return container_id[:12]


@dataclass(frozen=True)
class ContainerSnapshot:
    """Point-in-time view of a container, built from a full inspect response.

    Never mutated. The raw inspect document is kept so the config extractor
    can carry passthrough fields forward.
    """
    id: str
    name: str
    image: str
    env: Tuple[str, ...] = ()
    labels: Dict[str, str] = field(default_factory=dict)
    network_mode: str = ''
    networks: Dict[str, Dict[str, Any]] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict, repr=False, compare=False)

    @classmethod
    def from_inspect(cls, data: Dict[str, Any]) -> 'ContainerSnapshot':
        config = data.get('Config') or {}
        host_config = data.get('HostConfig') or {}
        networks = (data.get('NetworkSettings') or {}).get('Networks') or {}
        return cls(
            id=data.get('Id', ''),
            # Inspect reports names with the daemon's leading slash
            name=(data.get('Name') or '').lstrip('/'),
            image=config.get('Image', ''),
            env=tuple(config.get('Env') or ()),
            labels=dict(config.get('Labels') or {}),
            network_mode=host_config.get('NetworkMode') or '',
            networks=dict(networks),
            raw=data,
        )

    @property
    def display_name(self) -> str:
        return self.name or short_id(self.id)

    @property
    def config(self) -> Dict[str, Any]:
        return self.raw.get('Config') or {}

    @property
    def host_config(self) -> Dict[str, Any]:
        return self.raw.get('HostConfig') or {}


def list_running_snapshots(docker) -> List[ContainerSnapshot]:
    """Inspect every running container. Any daemon error aborts the listing."""
    snapshots = []
    for summary in docker.list_containers(filters={'status': ['running']}):
        snapshots.append(ContainerSnapshot.from_inspect(docker.inspect_container(summary['Id'])))
    return snapshots


def filter_opted_in(snapshots: List[ContainerSnapshot]) -> List[ContainerSnapshot]:
    """Keep containers labelled io.repull.enable=true (exact string match)."""
    return [s for s in snapshots if s.labels.get(ENABLE_LABEL) == "true"]


def group_key(snapshot: ContainerSnapshot) -> str:
    project = snapshot.labels.get(COMPOSE_PROJECT_LABEL)
    service = snapshot.labels.get(COMPOSE_SERVICE_LABEL)
    if project and service:
        return f"{project}:{service}"
    return f"standalone:{snapshot.id}"


def group_by_compose_service(snapshots: List[ContainerSnapshot]) -> Dict[str, List[ContainerSnapshot]]:
    """Partition snapshots into update groups.

    Compose-managed containers (both labels present and non-empty) group
    under "project:service"; everything else is its own
    "standalone:<id>" group. Groups and their members keep input order.
    """
    groups: Dict[str, List[ContainerSnapshot]] = {}
    for snapshot in snapshots:
        groups.setdefault(group_key(snapshot), []).append(snapshot)
    return groups


def sanitize(s: str) -> str:
    """Strip control characters (newlines, escape sequences, DEL) from an external string.

    Container names, image references and daemon error text end up in logs
    and notifications; this stops them from injecting lines or terminal
    escapes.
    """
    return ''.join(ch for ch in s if ord(ch) >= 32 and ord(ch) != 127)

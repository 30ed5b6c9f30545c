"""
Container recreation: rebuild creation parameters from a live container,
swap a new container in for the old one, and repair containers that shared
the old one's network namespace.
"""

import logging
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Optional

import requests

from containers import ContainerSnapshot, sanitize, short_id
from docker_client import is_not_found, is_removal_in_progress

logger = logging.getLogger(__name__)

# Old container id -> new container id, for containers recreated in the current run
RecreationMap = Dict[str, str]

CONTAINER_MODE_PREFIX = 'container:'
STOP_TIMEOUT = 10  # seconds before the daemon kills the container
REMOVAL_DEADLINE = 60
REMOVAL_POLL_INTERVAL = 1

# Config fields copied as-is when set
CONFIG_PASSTHROUGH = (
    'Cmd', 'Entrypoint', 'WorkingDir', 'User', 'Domainname',
    'Tty', 'OpenStdin', 'StdinOnce', 'StopSignal', 'StopTimeout', 'Healthcheck',
)

# HostConfig fields copied as-is when set, resource limits included
HOST_CONFIG_PASSTHROUGH = (
    'RestartPolicy', 'CapAdd', 'CapDrop', 'Dns', 'DnsSearch', 'DnsOptions',
    'ExtraHosts', 'Privileged', 'SecurityOpt', 'Tmpfs', 'Sysctls', 'ShmSize',
    'PidMode', 'IpcMode', 'UTSMode', 'GroupAdd', 'ReadonlyRootfs', 'LogConfig',
    'Runtime', 'Init',
    'Memory', 'MemoryReservation', 'MemorySwap', 'NanoCpus', 'CpuShares',
    'CpuQuota', 'CpuPeriod', 'CpusetCpus', 'CpusetMems', 'BlkioWeight',
    'PidsLimit', 'Ulimits', 'Devices', 'DeviceRequests', 'OomKillDisable',
)

# Per-network settings the daemon accepts back on create/connect; the rest
# (EndpointID, IPAddress, Gateway, ...) describe the old attachment.
ENDPOINT_KEYS = ('IPAMConfig', 'Links', 'Aliases', 'DriverOpts')


class RecreateError(Exception):
    """Recreating one container failed. The old container has been rolled back where possible."""


class RemovalTimeout(Exception):
    """A container was still present when the removal poll deadline passed."""


@dataclass
class CreateParams:
    """Everything needed to create an equivalent container."""
    body: Dict[str, Any]
    network_mode: str
    primary_network: Optional[str] = None
    additional_networks: List[str] = field(default_factory=list)
    endpoints: Dict[str, Dict[str, Any]] = field(default_factory=dict)


def is_container_mode(network_mode: str) -> bool:
    return network_mode.startswith(CONTAINER_MODE_PREFIX)


def can_set_hostname(network_mode: str) -> bool:
    """host, none and container: modes reject an explicit hostname."""
    return not (is_container_mode(network_mode) or network_mode in ('host', 'none'))


def _endpoint_settings(endpoint: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {k: v for k, v in (endpoint or {}).items() if k in ENDPOINT_KEYS and v}


def _binds_from_mounts(mounts: Iterable[Dict[str, Any]]) -> List[str]:
    binds = []
    for mount in mounts or []:
        if mount.get('Type') == 'bind':
            source = mount['Source']
        elif mount.get('Type') == 'volume':
            # Named and anonymous volumes alike are reattached by name
            source = mount['Name']
        else:
            continue
        bind_str = f"{source}:{mount['Destination']}"
        mode = mount.get('Mode') or ''
        if not mount.get('RW', True) and 'ro' not in mode.split(','):
            mode = ','.join(filter(None, [mode, 'ro']))
        if mode:
            bind_str += f":{mode}"
        binds.append(bind_str)
    return binds


def extract_config(snapshot: ContainerSnapshot) -> CreateParams:
    """Derive container-create parameters from a container's live inspect data.

    The daemon accepts one network at creation time, so the alphabetically
    first network is the primary one and the others are returned as
    additional networks to connect after creation.
    """
    config = snapshot.config
    host_config = snapshot.host_config
    network_mode = snapshot.network_mode
    shares_network_namespace = is_container_mode(network_mode) or network_mode == 'host'

    body: Dict[str, Any] = {
        'Image': snapshot.image,
        'Env': list(snapshot.env),
        'Labels': dict(snapshot.labels),
    }
    for key in CONFIG_PASSTHROUGH:
        if config.get(key):
            body[key] = config[key]

    # Skip the daemon-generated hostname (the short id) so the new container gets its own
    hostname = config.get('Hostname')
    if can_set_hostname(network_mode) and hostname and hostname != short_id(snapshot.id):
        body['Hostname'] = hostname

    hc: Dict[str, Any] = {}
    for key in HOST_CONFIG_PASSTHROUGH:
        if host_config.get(key):
            hc[key] = host_config[key]

    # Ports cannot be published from a shared network namespace
    port_bindings = host_config.get('PortBindings') or {}
    if port_bindings and not shares_network_namespace:
        hc['PortBindings'] = {port: list(bindings or []) for port, bindings in port_bindings.items()}
        body['ExposedPorts'] = {port: {} for port in port_bindings}

    binds = _binds_from_mounts(snapshot.raw.get('Mounts'))
    if binds:
        hc['Binds'] = binds

    if network_mode:
        hc['NetworkMode'] = network_mode
    body['HostConfig'] = hc

    params = CreateParams(body=body, network_mode=network_mode)
    if snapshot.networks and not is_container_mode(network_mode):
        names = sorted(snapshot.networks)
        params.primary_network = names[0]
        params.additional_networks = names[1:]
        body['NetworkingConfig'] = {
            'EndpointsConfig': {names[0]: _endpoint_settings(snapshot.networks[names[0]])}
        }
        params.endpoints = {name: _endpoint_settings(snapshot.networks[name]) for name in names[1:]}
    return params


def resolve_network_mode(docker, network_mode: str, recreated: RecreationMap) -> str:
    """Point a container:<ref> network mode at the current id of its target.

    Compose stores network_mode: service:X as a frozen container:<id>,
    which goes stale as soon as X is recreated. Lookup order: containers
    recreated in this run (exact or short-id match), a direct inspect of
    the reference, then a name match across all containers. An unresolvable
    reference is returned unchanged and left for the create call to reject.
    """
    if not is_container_mode(network_mode):
        return network_mode
    ref = network_mode[len(CONTAINER_MODE_PREFIX):]
    if not ref:
        return network_mode

    if ref in recreated:
        return CONTAINER_MODE_PREFIX + recreated[ref]
    for old_id, new_id in recreated.items():
        if old_id.startswith(ref) or ref.startswith(short_id(old_id)):
            return CONTAINER_MODE_PREFIX + new_id

    try:
        info = docker.inspect_container(ref)
        return CONTAINER_MODE_PREFIX + info['Id']
    except requests.RequestException:
        pass

    try:
        containers = docker.list_containers(include_stopped=True)
    except requests.RequestException as e:
        logger.debug(f"Could not list containers to resolve {sanitize(ref)}: {e}")
        return network_mode

    for container in containers:
        for name in container.get('Names') or []:
            if name == ref or name.lstrip('/') == ref:
                return CONTAINER_MODE_PREFIX + container['Id']

    logger.warning(f"Could not resolve network mode {sanitize(network_mode)}, keeping it as-is")
    return network_mode


class Recreator:
    """Replaces one container with an equivalent one running its (freshly pulled) image.

    Sequence: stop, rename the old container out of the way, create under
    the original name, connect extra networks, start, remove the old one.
    A failure after the rename puts the old container back under its name
    and restarts it.
    """

    def __init__(self, docker, stop_timeout: int = STOP_TIMEOUT,
                 removal_deadline: float = REMOVAL_DEADLINE,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.monotonic):
        self.docker = docker
        self.stop_timeout = stop_timeout
        self.removal_deadline = removal_deadline
        self._sleep = sleep
        self._clock = clock

    def recreate(self, snapshot: ContainerSnapshot, recreated: RecreationMap) -> str:
        """Recreate a container and return the new container id."""
        name = snapshot.display_name
        temp_name = f"{name}-old-{short_id(snapshot.id)}"

        logger.info(f"Stopping container {sanitize(name)}...")
        try:
            self.docker.stop_container(snapshot.id, timeout=self.stop_timeout)
        except requests.RequestException as e:
            raise RecreateError(f"failed to stop container {name}: {e}") from e

        logger.info(f"Renaming old container to {sanitize(temp_name)}")
        try:
            self.docker.rename_container(snapshot.id, temp_name)
        except requests.RequestException as e:
            self._start_old(snapshot)
            raise RecreateError(f"failed to rename container {name}: {e}") from e

        try:
            new_id = self.create_and_start(snapshot, name, recreated)
        except RecreateError:
            logger.info(f"Rolling back {sanitize(name)}...")
            self._rollback(snapshot, name)
            raise

        self._remove_old(snapshot, temp_name)
        return new_id

    def create_and_start(self, snapshot: ContainerSnapshot, name: str,
                         recreated: Optional[RecreationMap] = None) -> str:
        """Create, connect and start a replacement for snapshot under name.

        The partially created container is force-removed if connecting or
        starting fails.
        """
        params = extract_config(snapshot)
        network_mode = resolve_network_mode(self.docker, params.network_mode, recreated or {})
        if network_mode != params.network_mode:
            logger.info(f"Network mode {sanitize(params.network_mode)} -> {sanitize(network_mode)}")
            params.body['HostConfig']['NetworkMode'] = network_mode

        logger.info(f"Creating new container {sanitize(name)}...")
        try:
            new_id = self.docker.create_container(name, params.body)
        except requests.RequestException as e:
            raise RecreateError(f"failed to create container {name}: {e}") from e

        for network in params.additional_networks:
            try:
                self.docker.connect_network(network, new_id, params.endpoints.get(network))
            except requests.RequestException as e:
                self._discard(new_id)
                raise RecreateError(f"failed to connect {name} to network {network}: {e}") from e

        try:
            self.docker.start_container(new_id)
        except requests.RequestException as e:
            self._discard(new_id)
            raise RecreateError(f"failed to start container {name}: {e}") from e

        return new_id

    def wait_for_removal(self, ref: str) -> None:
        """Poll until the container is gone, up to the removal deadline."""
        deadline = self._clock() + self.removal_deadline
        while True:
            try:
                self.docker.inspect_container(ref)
            except requests.RequestException as e:
                if is_not_found(e):
                    return
                raise
            if self._clock() >= deadline:
                raise RemovalTimeout(f"container {ref} still present after {self.removal_deadline}s")
            self._sleep(REMOVAL_POLL_INTERVAL)

    def _remove(self, ref: str, force: bool = False) -> None:
        """Remove a container, tolerating a removal the daemon already has in flight."""
        try:
            self.docker.remove_container(ref, force=force)
        except requests.RequestException as e:
            if is_not_found(e):
                return
            if not is_removal_in_progress(e):
                raise
            logger.debug(f"Removal of {short_id(ref)} already in progress, waiting")
            self.wait_for_removal(ref)

    def _discard(self, new_id: str) -> None:
        try:
            self._remove(new_id, force=True)
        except (requests.RequestException, RemovalTimeout) as e:
            logger.error(f"Could not remove partially created container {short_id(new_id)}: {sanitize(str(e))}")

    def _start_old(self, snapshot: ContainerSnapshot) -> None:
        try:
            self.docker.start_container(snapshot.id)
        except requests.RequestException as e:
            logger.error(f"Could not restart {sanitize(snapshot.display_name)}: {sanitize(str(e))}")

    def _rollback(self, snapshot: ContainerSnapshot, name: str) -> None:
        try:
            self.docker.rename_container(snapshot.id, name)
        except requests.RequestException as e:
            logger.error(
                f"Rollback could not rename {short_id(snapshot.id)} back to {sanitize(name)}: "
                f"{sanitize(str(e))}"
            )
        self._start_old(snapshot)

    def _remove_old(self, snapshot: ContainerSnapshot, temp_name: str) -> None:
        # The new container is already running; failure here is only logged
        logger.info(f"Removing old container {sanitize(temp_name)}")
        try:
            self._remove(snapshot.id)
        except RemovalTimeout as e:
            logger.error(f"Old container {sanitize(temp_name)} was not removed: {e}")
        except requests.RequestException as e:
            logger.warning(f"Could not remove old container {sanitize(temp_name)}: {sanitize(str(e))}")


def references_container(network_mode: str, target: ContainerSnapshot) -> bool:
    """True if network_mode is container:<ref> with ref naming target by id, id prefix or name."""
    if not is_container_mode(network_mode):
        return False
    ref = network_mode[len(CONTAINER_MODE_PREFIX):]
    if not ref:
        return False
    return ref == target.id or target.id.startswith(ref) or ref == target.name


def find_network_dependents(docker, replaced: ContainerSnapshot,
                            exclude: Iterable[str] = ()) -> List[ContainerSnapshot]:
    """Running containers whose network mode points at the replaced container."""
    exclude = set(exclude)
    dependents = []
    for summary in docker.list_containers(filters={'status': ['running']}):
        container_id = summary.get('Id', '')
        if container_id == replaced.id or container_id in exclude:
            continue
        mode = (summary.get('HostConfig') or {}).get('NetworkMode') or ''
        if not references_container(mode, replaced):
            continue
        try:
            dependents.append(ContainerSnapshot.from_inspect(docker.inspect_container(container_id)))
        except requests.RequestException as e:
            if not is_not_found(e):
                raise
    return dependents


def repair_network_dependents(recreator: Recreator, replaced: ContainerSnapshot,
                              recreated: RecreationMap,
                              is_self: Optional[Callable[[ContainerSnapshot], bool]] = None) -> List[str]:
    """Recreate containers whose network namespace belonged to the replaced container.

    They lost connectivity the moment the old container went away, so
    recreating them restores it. Each success is added to recreated;
    failures are logged and skipped.
    """
    # Containers recreated earlier in the run still point at the old id when
    # they were created before the container they depend on
    replacement = recreated.get(replaced.id)
    try:
        dependents = find_network_dependents(recreator.docker, replaced,
                                             exclude=[replacement] if replacement else ())
    except requests.RequestException as e:
        logger.warning(f"Failed to find network dependents of {sanitize(replaced.display_name)}: {e}")
        return []

    new_ids = []
    for dep in dependents:
        dep_name = sanitize(dep.display_name)
        if is_self is not None and is_self(dep):
            logger.warning(f"Not recreating network-dependent {dep_name}: it is this updater")
            continue
        logger.info(f"Recreating network-dependent container {dep_name}")
        try:
            new_id = recreator.recreate(dep, recreated)
        except RecreateError as e:
            logger.warning(f"Failed to recreate network-dependent container {dep_name}: {sanitize(str(e))}")
            continue
        recreated[dep.id] = new_id
        new_ids.append(new_id)
        logger.info(f"Successfully recreated network-dependent {dep_name}")
    return new_ids

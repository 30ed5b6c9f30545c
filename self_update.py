"""
Self-update: detecting repull's own container and replacing it without
stopping it first.
"""

import logging
import re
import socket
from dataclasses import dataclass
from enum import Enum
from typing import Optional

import requests

from containers import SELF_LABEL, ContainerSnapshot, sanitize, short_id
from recreate import RecreateError, RecreationMap, Recreator

logger = logging.getLogger(__name__)

CGROUP_PATH = '/proc/self/cgroup'

_CONTAINER_ID_RE = re.compile(r'^[0-9a-f]{64}$')
# The daemon's default hostname is the short container id
_DEFAULT_HOSTNAME_RE = re.compile(r'^[0-9a-f]{12,64}$')


def container_id_from_cgroup(text: str) -> Optional[str]:
    """Find the container id in /proc/self/cgroup content.

    Handles the two layouts the daemon produces:
      cgroup v1:          <n>:<controllers>:/docker/<id>
      cgroup v2, systemd: 0::/system.slice/docker-<id>.scope
    """
    for line in text.splitlines():
        fields = line.split(':', 2)
        if len(fields) != 3:
            continue
        segment = fields[2].rsplit('/', 1)[-1]
        if segment.endswith('.scope'):
            segment = segment[:-len('.scope')]
        if segment.startswith('docker-'):
            segment = segment[len('docker-'):]
        if _CONTAINER_ID_RE.match(segment):
            return segment
    return None


@dataclass(frozen=True)
class SelfIdentity:
    """Who "self" is, worked out once at startup and passed to the orchestrator."""
    container_id: str = ''
    hostname: str = ''

    def matches(self, snapshot: ContainerSnapshot) -> bool:
        if self.container_id:
            return snapshot.id == self.container_id
        if _DEFAULT_HOSTNAME_RE.match(self.hostname):
            return snapshot.id.startswith(self.hostname)
        # Custom hostname: rely on the label baked into repull's image
        return (bool(self.hostname)
                and snapshot.labels.get(SELF_LABEL) == "true"
                and snapshot.config.get('Hostname') == self.hostname)


def detect_self_identity(cgroup_path: str = CGROUP_PATH) -> SelfIdentity:
    """Read the own container id from the cgroup file, keeping the hostname as a fallback."""
    container_id = None
    try:
        with open(cgroup_path, 'r') as f:
            container_id = container_id_from_cgroup(f.read())
    except OSError as e:
        logger.debug(f"Could not read {cgroup_path}: {e}")

    hostname = socket.gethostname()
    if container_id:
        logger.debug(f"Own container id from cgroup: {short_id(container_id)}")
    else:
        logger.debug(f"No container id in cgroup, falling back to hostname {hostname}")
    return SelfIdentity(container_id=container_id or '', hostname=hostname)


class SelfUpdateOutcome(Enum):
    REPLACED = 'replaced'  # replacement running, this process must terminate
    FAILED = 'failed'      # this process keeps running under its original name


@dataclass
class SelfUpdateResult:
    outcome: SelfUpdateOutcome
    new_id: Optional[str] = None
    error: Optional[str] = None

    @property
    def terminate(self) -> bool:
        return self.outcome is SelfUpdateOutcome.REPLACED


class SelfUpdateHandler:
    """Replaces the container this process runs in.

    Stopping first would kill the update midway, so the running container
    is renamed, the replacement is created and started under the original
    name, and only then is the old one stopped with a zero grace period.
    An explicit stop marks it operator-stopped, which keeps an
    unless-stopped restart policy from bringing it back.
    """

    def __init__(self, recreator: Recreator, notifier=None):
        self.recreator = recreator
        self.notifier = notifier

    def update(self, snapshot: ContainerSnapshot, group_key: str, image: str,
               old_digest: str, new_digest: str,
               recreated: Optional[RecreationMap] = None) -> SelfUpdateResult:
        docker = self.recreator.docker
        name = snapshot.display_name
        temp_name = f"{name}-old-{short_id(snapshot.id)}"

        try:
            docker.rename_container(snapshot.id, temp_name)
        except requests.RequestException as e:
            logger.error(f"Failed to rename container for self-update: {sanitize(str(e))}")
            return SelfUpdateResult(SelfUpdateOutcome.FAILED, error="Self-update failed: rename error")
        logger.info(f"Renamed {sanitize(name)} to {sanitize(temp_name)}")

        try:
            new_id = self.recreator.create_and_start(snapshot, name, recreated)
        except RecreateError as e:
            logger.error(f"Failed to create new container, rolling back: {sanitize(str(e))}")
            try:
                docker.rename_container(snapshot.id, name)
            except requests.RequestException as rename_err:
                logger.error(f"Could not rename {sanitize(temp_name)} back to {sanitize(name)}: {rename_err}")
            return SelfUpdateResult(SelfUpdateOutcome.FAILED,
                                    error="Self-update failed: could not start new container")

        logger.info("New container started, stopping old container")
        if self.notifier is not None:
            self.notifier.notify_update(group_key, image, old_digest, new_digest)

        try:
            docker.stop_container(snapshot.id, timeout=0)
        except requests.RequestException as e:
            logger.warning(f"Failed to stop old container, exiting instead: {sanitize(str(e))}")
        return SelfUpdateResult(SelfUpdateOutcome.REPLACED, new_id=new_id)

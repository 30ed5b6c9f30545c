"""
Update orchestration: digest check per group, then recreation of every
container in the group, one at a time.
"""

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional

import requests

from containers import (
    ContainerSnapshot,
    ENABLE_LABEL,
    filter_opted_in,
    group_by_compose_service,
    list_running_snapshots,
    sanitize,
)
from digest import current_digest, digest_changed, image_digest, truncate_digest
from docker_client import PullError
from recreate import RecreateError, RecreationMap, Recreator, repair_network_dependents
from self_update import SelfIdentity, SelfUpdateHandler

logger = logging.getLogger(__name__)


class UpdateError(Exception):
    """A failure that aborts the current run. The error notification has already been sent."""


@dataclass
class RunResult:
    updated: List[str] = field(default_factory=list)
    skipped: List[str] = field(default_factory=list)
    recreated: RecreationMap = field(default_factory=dict)
    # Set after a successful self-update: the caller must exit now
    terminate: bool = False


class Updater:
    """Drives one update run against the daemon.

    Groups are handled strictly one after another, and containers within a
    group in list order. The recreation map lives for a single run.
    """

    def __init__(self, docker, notifier=None, dry_run: bool = False,
                 self_identity: Optional[SelfIdentity] = None,
                 recreator: Optional[Recreator] = None):
        self.docker = docker
        self.notifier = notifier
        self.dry_run = dry_run
        self.self_identity = self_identity or SelfIdentity()
        self.recreator = recreator or Recreator(docker)
        self.self_updater = SelfUpdateHandler(self.recreator, notifier)

    def run_once(self) -> RunResult:
        """List, filter and group running containers, then update the groups."""
        if self.dry_run:
            logger.info("=== DRY RUN MODE ===")

        snapshots = list_running_snapshots(self.docker)
        logger.info(f"Found {len(snapshots)} running container(s)")

        opted_in = filter_opted_in(snapshots)
        logger.info(f"Found {len(opted_in)} opted-in container(s) (label: {ENABLE_LABEL}=true)")
        if not opted_in:
            logger.info("No containers opted in for auto-update")
            return RunResult()

        groups = group_by_compose_service(opted_in)
        logger.info(f"Grouped into {len(groups)} service(s)")
        return self.update_groups(groups)

    def update_groups(self, groups: Dict[str, List[ContainerSnapshot]]) -> RunResult:
        result = RunResult()
        for key, snapshots in groups.items():
            if not snapshots:
                continue
            if self._update_group(key, snapshots, result):
                result.updated.append(key)
            else:
                result.skipped.append(key)
            if result.terminate:
                break
        return result

    def _notify_error(self, group: str, message: str) -> None:
        if self.notifier is not None:
            self.notifier.notify_error(sanitize(group), sanitize(message))

    def _fail(self, group: str, message: str, cause: Exception) -> UpdateError:
        logger.error(f"{sanitize(message)}: {sanitize(str(cause))}")
        self._notify_error(group, message)
        return UpdateError(f"{message}: {cause}")

    def _update_group(self, key: str, snapshots: List[ContainerSnapshot], result: RunResult) -> bool:
        """Update one group. Returns False when its image did not change."""
        group = sanitize(key)
        # All containers in a group share the first container's image
        image = snapshots[0].image
        safe_image = sanitize(image)
        logger.info(f"Checking {group} ({len(snapshots)} container(s))")

        old_digest = current_digest(self.docker, image)

        logger.info(f"Pulling image {safe_image}")
        try:
            self.docker.pull_image(image)
        except (requests.RequestException, PullError) as e:
            raise self._fail(key, f"Failed to pull image {image}", e) from e

        try:
            new_digest = image_digest(self.docker, image)
        except requests.RequestException as e:
            raise self._fail(key, f"Failed to get digest for {image}", e) from e

        if not digest_changed(old_digest, new_digest):
            logger.info(f"Image digest unchanged, skipping {group}")
            return False

        logger.info(f"Image digest changed: {truncate_digest(old_digest)} -> {truncate_digest(new_digest)}")

        if self.dry_run:
            logger.info(f"[DRY RUN] Would recreate {group} ({len(snapshots)} container(s))")
            return True

        logger.info(f"Recreating {len(snapshots)} container(s)")
        recreated = result.recreated
        for snapshot in snapshots:
            snapshot = self._current(snapshot, recreated)
            name = sanitize(snapshot.display_name)

            if self.self_identity.matches(snapshot):
                logger.info(f"Self-update detected for {name}")
                outcome = self.self_updater.update(snapshot, group, safe_image,
                                                   old_digest, new_digest, recreated)
                if outcome.terminate:
                    recreated[snapshot.id] = outcome.new_id
                    result.terminate = True
                    return True
                self._notify_error(key, outcome.error)
                raise UpdateError(outcome.error)

            logger.info(f"Recreating container {name}")
            try:
                new_id = self.recreator.recreate(snapshot, recreated)
            except RecreateError as e:
                raise self._fail(key, f"Failed to recreate container {snapshot.display_name}", e) from e
            recreated[snapshot.id] = new_id
            logger.info(f"Successfully recreated {name}")

            repair_network_dependents(self.recreator, snapshot, recreated,
                                      is_self=self.self_identity.matches)

        if self.notifier is not None:
            self.notifier.notify_update(group, safe_image, old_digest, new_digest)
        return True

    def _current(self, snapshot: ContainerSnapshot, recreated: RecreationMap) -> ContainerSnapshot:
        """Fresh snapshot for a container already recreated earlier in this run."""
        if snapshot.id not in recreated:
            return snapshot
        new_id = recreated[snapshot.id]
        while new_id in recreated:
            new_id = recreated[new_id]
        logger.debug(f"{sanitize(snapshot.display_name)} was already recreated as {new_id[:12]}")
        return ContainerSnapshot.from_inspect(self.docker.inspect_container(new_id))

"""Shared fixtures: an in-memory stand-in for the Docker daemon."""

import copy
import hashlib

import pytest
import requests


MUTATING_CALLS = {
    'create_container', 'start_container', 'stop_container',
    'rename_container', 'remove_container', 'connect_network',
}


def http_error(status, message):
    """Build the requests.HTTPError DockerClient raises for a daemon error."""
    response = requests.Response()
    response.status_code = status
    response.reason = {404: 'Not Found', 409: 'Conflict', 500: 'Internal Server Error'}.get(status, '')
    return requests.HTTPError(f"{status} {response.reason}: {message}", response=response)


def make_id(seed):
    return hashlib.sha256(seed.encode()).hexdigest()


class FakeDocker:
    """Implements the DockerClient methods the engine uses against in-memory state."""

    def __init__(self):
        self.containers = {}
        self.images = {}
        self.pulls = {}
        self.calls = []
        self.created = {}
        self.failures = {}
        self._counter = 0

    # -- test helpers ----------------------------------------------------

    def add_container(self, name, image='nginx:latest', container_id=None, labels=None,
                      network_mode='default', networks=None, running=True,
                      config=None, host_config=None, mounts=None):
        container_id = container_id or make_id(name)
        cfg = {
            'Image': image,
            'Hostname': container_id[:12],
            'Env': ['PATH=/usr/bin:/bin'],
            'Labels': dict(labels or {}),
            'Cmd': None,
        }
        cfg.update(config or {})
        hc = {'NetworkMode': network_mode, 'RestartPolicy': {'Name': 'unless-stopped'}}
        hc.update(host_config or {})
        self.containers[container_id] = {
            'Id': container_id,
            'Name': '/' + name,
            'State': {'Running': running},
            'Config': cfg,
            'HostConfig': hc,
            'Mounts': list(mounts or []),
            'NetworkSettings': {'Networks': copy.deepcopy(networks or {})},
        }
        return container_id

    def snapshot(self, ref):
        from containers import ContainerSnapshot
        return ContainerSnapshot.from_inspect(self.inspect_container(ref))

    def set_image(self, ref, digest, pulled_digest=None):
        """Register a local image; pulled_digest is what a pull of ref brings in."""
        self.images[ref] = {'Id': 'sha256:local-' + digest, 'RepoDigests': [digest]}
        if pulled_digest is not None:
            self.pulls[ref] = {'Id': 'sha256:local-' + pulled_digest, 'RepoDigests': [pulled_digest]}

    def fail(self, method, error, when=None):
        """Make method raise error, optionally only when when(*args) is true."""
        self.failures[method] = (error, when)

    def mutations(self):
        return [c for c in self.calls if c[0] in MUTATING_CALLS]

    def by_name(self, name):
        for data in self.containers.values():
            if data['Name'].lstrip('/') == name:
                return data
        return None

    def names(self):
        return sorted(d['Name'].lstrip('/') for d in self.containers.values())

    # -- internals -------------------------------------------------------

    def _record(self, method, *args):
        self.calls.append((method,) + args)
        if method in self.failures:
            error, when = self.failures[method]
            if when is None or when(*args):
                raise error

    def _find(self, ref):
        if ref in self.containers:
            return self.containers[ref]
        by_name = self.by_name(ref.lstrip('/'))
        if by_name is not None:
            return by_name
        matches = [d for cid, d in self.containers.items() if ref and cid.startswith(ref)]
        if len(matches) == 1:
            return matches[0]
        raise http_error(404, f"No such container: {ref}")

    # -- DockerClient interface ------------------------------------------

    def ping(self):
        self._record('ping')

    def list_containers(self, include_stopped=False, filters=None):
        self._record('list_containers', include_stopped, filters)
        summaries = []
        for data in self.containers.values():
            if not include_stopped and not data['State']['Running']:
                continue
            summaries.append({
                'Id': data['Id'],
                'Names': [data['Name']],
                'Image': data['Config']['Image'],
                'State': 'running' if data['State']['Running'] else 'exited',
                'HostConfig': {'NetworkMode': data['HostConfig'].get('NetworkMode', '')},
            })
        return summaries

    def inspect_container(self, ref):
        self._record('inspect_container', ref)
        return copy.deepcopy(self._find(ref))

    def create_container(self, name, body):
        self._record('create_container', name, body)
        if self.by_name(name) is not None:
            raise http_error(409, f'Conflict. The container name "/{name}" is already in use')
        self._counter += 1
        new_id = make_id(f"{name}-{self._counter}")
        cfg = {k: v for k, v in body.items() if k not in ('HostConfig', 'NetworkingConfig')}
        endpoints = (body.get('NetworkingConfig') or {}).get('EndpointsConfig') or {}
        self.containers[new_id] = {
            'Id': new_id,
            'Name': '/' + name,
            'State': {'Running': False},
            'Config': copy.deepcopy(cfg),
            'HostConfig': copy.deepcopy(body.get('HostConfig') or {}),
            'Mounts': [],
            'NetworkSettings': {'Networks': copy.deepcopy(endpoints)},
        }
        self.created[new_id] = copy.deepcopy(body)
        return new_id

    def start_container(self, ref):
        self._record('start_container', ref)
        self._find(ref)['State']['Running'] = True

    def stop_container(self, ref, timeout=10):
        self._record('stop_container', ref, timeout)
        self._find(ref)['State']['Running'] = False

    def rename_container(self, ref, name):
        self._record('rename_container', ref, name)
        data = self._find(ref)
        other = self.by_name(name)
        if other is not None and other is not data:
            raise http_error(409, f'Conflict. The container name "/{name}" is already in use')
        data['Name'] = '/' + name

    def remove_container(self, ref, force=False):
        self._record('remove_container', ref, force)
        data = self._find(ref)
        if data['State']['Running'] and not force:
            raise http_error(409, "You cannot remove a running container")
        del self.containers[data['Id']]

    def connect_network(self, network, container_id, endpoint_config=None):
        self._record('connect_network', network, container_id, endpoint_config)
        self._find(container_id)['NetworkSettings']['Networks'][network] = dict(endpoint_config or {})

    def inspect_image(self, ref):
        self._record('inspect_image', ref)
        if ref not in self.images:
            raise http_error(404, f"No such image: {ref}")
        return copy.deepcopy(self.images[ref])

    def pull_image(self, ref):
        self._record('pull_image', ref)
        if ref in self.pulls:
            self.images[ref] = self.pulls[ref]


class FakeNotifier:
    def __init__(self):
        self.updates = []
        self.errors = []

    def notify_update(self, group, image, old_digest, new_digest):
        self.updates.append((group, image, old_digest, new_digest))

    def notify_error(self, group, message):
        self.errors.append((group, message))


@pytest.fixture
def docker():
    return FakeDocker()


@pytest.fixture
def notifier():
    return FakeNotifier()

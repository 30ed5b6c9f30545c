"""
Docker Engine API client used by repull.

Talks to the daemon over its Unix socket (or plain TCP) with requests.
Every daemon call raises requests.RequestException on failure; HTTP errors
carry the daemon's own error message.
"""

import json
import os
import socket as _socket
from typing import Any, Dict, List, Optional

import requests
from urllib3.connection import HTTPConnection as _HTTPConnection
from urllib3.connectionpool import HTTPConnectionPool as _HTTPConnectionPool
from requests.adapters import HTTPAdapter as _HTTPAdapter


DEFAULT_DOCKER_HOST = 'unix:///var/run/docker.sock'
REQUEST_TIMEOUT = 30
PING_TIMEOUT = 10


class PullError(Exception):
    """The daemon reported an error in the image pull progress stream."""


class _UnixSocketConnection(_HTTPConnection):
    """HTTPConnection that connects via a Unix domain socket."""

    def __init__(self, socket_path: str, timeout=None):
        super().__init__('localhost')
        self._socket_path = socket_path
        self._connect_timeout = timeout

    def connect(self):
        sock = _socket.socket(_socket.AF_UNIX, _socket.SOCK_STREAM)
        if self._connect_timeout is not None:
            sock.settimeout(self._connect_timeout)
        sock.connect(self._socket_path)
        self.sock = sock


class _UnixSocketPool(_HTTPConnectionPool):
    """Connection pool backed by a Unix domain socket."""

    def __init__(self, socket_path: str, timeout=None):
        super().__init__('localhost')
        self._socket_path = socket_path
        self._connect_timeout = timeout

    def _new_conn(self):
        return _UnixSocketConnection(self._socket_path, self._connect_timeout)


class _UnixSocketAdapter(_HTTPAdapter):
    """requests adapter that routes all requests through a Unix socket."""

    def __init__(self, socket_path: str):
        self._socket_path = socket_path
        super().__init__()

    def get_connection(self, url: str, proxies=None):
        return _UnixSocketPool(self._socket_path)

    # Needed in requests >= 2.32 / urllib3 >= 2.x
    def get_connection_with_tls_context(self, request, verify, proxies=None, cert=None):
        return _UnixSocketPool(self._socket_path)


def _raise_for_status(response: requests.Response) -> None:
    """Like Response.raise_for_status but keeps the daemon's error message."""
    if response.ok:
        return
    try:
        message = response.json().get('message', '')
    except ValueError:
        message = response.text
    raise requests.HTTPError(
        f"{response.status_code} {response.reason}: {message}".strip(),
        response=response,
    )


def status_code(error: Exception) -> Optional[int]:
    """HTTP status carried by a requests error, if any."""
    response = getattr(error, 'response', None)
    return response.status_code if response is not None else None


def is_not_found(error: Exception) -> bool:
    return status_code(error) == 404


def is_removal_in_progress(error: Exception) -> bool:
    """True for the daemon's 409 'removal of container ... is already in progress'."""
    return status_code(error) == 409 and 'already in progress' in str(error)


def split_reference(image: str):
    """Split an image reference into (repository, tag-or-digest) for a pull.

    The tag defaults to 'latest'; pulling without a tag would fetch every
    tag of the repository.
    """
    at_pos = image.find('@')
    if at_pos != -1:
        return image[:at_pos], image[at_pos + 1:]

    # Only a colon after the last slash is a tag; earlier ones are registry ports.
    last_slash = image.rfind('/')
    last_colon = image.rfind(':')
    if last_colon > last_slash:
        return image[:last_colon], image[last_colon + 1:]
    return image, 'latest'


class DockerClient:
    """Minimal Docker Engine API client covering what the recreation engine needs."""

    def __init__(self, host: Optional[str] = None):
        host = host or os.environ.get('DOCKER_HOST') or DEFAULT_DOCKER_HOST
        self.host = host
        self._session = requests.Session()

        if host.startswith('unix://'):
            self._session.mount('http+unix://', _UnixSocketAdapter(host[len('unix://'):]))
            self._base_url = 'http+unix://docker'
        elif host.startswith('tcp://'):
            self._base_url = 'http://' + host[len('tcp://'):].rstrip('/')
        elif host.startswith(('http://', 'https://')):
            self._base_url = host.rstrip('/')
        else:
            raise ValueError(f"Unsupported Docker host '{host}' (use unix:// or tcp://)")

    def _url(self, path: str) -> str:
        return f'{self._base_url}{path}'

    def _request(self, method: str, path: str, timeout=REQUEST_TIMEOUT, **kwargs) -> requests.Response:
        r = self._session.request(method, self._url(path), timeout=timeout, **kwargs)
        _raise_for_status(r)
        return r

    # -- handshake -------------------------------------------------------

    def ping(self) -> None:
        """Verify the daemon answers, bounded so an unresponsive daemon cannot hang startup."""
        self._request('GET', '/_ping', timeout=PING_TIMEOUT)

    # -- containers ------------------------------------------------------

    def list_containers(self, include_stopped: bool = False,
                        filters: Optional[Dict[str, List[str]]] = None) -> List[Dict[str, Any]]:
        params = {'all': '1' if include_stopped else '0'}
        if filters:
            params['filters'] = json.dumps(filters)
        return self._request('GET', '/containers/json', params=params).json()

    def inspect_container(self, ref: str) -> Dict[str, Any]:
        return self._request('GET', f'/containers/{ref}/json').json()

    def create_container(self, name: str, body: Dict[str, Any]) -> str:
        r = self._request('POST', '/containers/create', params={'name': name}, json=body)
        return r.json()['Id']

    def start_container(self, ref: str) -> None:
        self._request('POST', f'/containers/{ref}/start')

    def stop_container(self, ref: str, timeout: int = 10) -> None:
        # The HTTP call has to outlive the daemon's own grace period.
        self._request('POST', f'/containers/{ref}/stop', params={'t': timeout},
                      timeout=REQUEST_TIMEOUT + timeout)

    def rename_container(self, ref: str, name: str) -> None:
        self._request('POST', f'/containers/{ref}/rename', params={'name': name})

    def remove_container(self, ref: str, force: bool = False) -> None:
        self._request('DELETE', f'/containers/{ref}', params={'force': '1' if force else '0'})

    def connect_network(self, network: str, container_id: str,
                        endpoint_config: Optional[Dict[str, Any]] = None) -> None:
        self._request('POST', f'/networks/{network}/connect',
                      json={'Container': container_id, 'EndpointConfig': endpoint_config or {}})

    # -- images ----------------------------------------------------------

    def inspect_image(self, ref: str) -> Dict[str, Any]:
        return self._request('GET', f'/images/{ref}/json').json()

    def pull_image(self, ref: str) -> None:
        """Pull an image and wait for the progress stream to finish.

        Only the connect phase is bounded; a large pull may take as long as
        it needs.
        """
        repository, tag = split_reference(ref)
        response = self._session.post(
            self._url('/images/create'),
            params={'fromImage': repository, 'tag': tag},
            stream=True,
            timeout=(REQUEST_TIMEOUT, None),
        )
        _raise_for_status(response)

        # Consume the stream; errors after the 200 are only reported in-band
        for line in response.iter_lines():
            if not line:
                continue
            try:
                event = json.loads(line)
            except json.JSONDecodeError:
                continue
            if 'error' in event:
                raise PullError(event['error'])

    def close(self) -> None:
        self._session.close()

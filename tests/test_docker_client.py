"""Tests for the Engine API client's request building and error mapping."""

import json

import pytest
import requests

from docker_client import DockerClient, is_not_found, is_removal_in_progress


class _Response:
    def __init__(self, status=200, body=None, reason='OK'):
        self.status_code = status
        self.reason = reason
        self.ok = status < 400
        self._body = body if body is not None else []
        self.text = json.dumps(self._body)

    def json(self):
        return self._body


@pytest.fixture
def client(monkeypatch):
    client = DockerClient('tcp://127.0.0.1:2375')
    client.requests = []
    client.response = _Response()

    def fake_request(method, url, **kwargs):
        client.requests.append((method, url, kwargs))
        return client.response

    monkeypatch.setattr(client._session, 'request', fake_request)
    return client


class TestListContainers:
    def test_running_only_by_default(self, client):
        client.list_containers()
        method, url, kwargs = client.requests[0]
        assert (method, url) == ('GET', 'http://127.0.0.1:2375/containers/json')
        assert kwargs['params'] == {'all': '0'}

    def test_include_stopped_sets_all(self, client):
        client.list_containers(include_stopped=True, filters={'status': ['exited']})
        params = client.requests[0][2]['params']
        assert params['all'] == '1'
        assert json.loads(params['filters']) == {'status': ['exited']}


class TestErrors:
    def test_daemon_message_kept(self, client):
        client.response = _Response(404, {'message': 'No such container: web'}, 'Not Found')
        with pytest.raises(requests.HTTPError) as exc_info:
            client.inspect_container('web')
        assert 'No such container: web' in str(exc_info.value)
        assert is_not_found(exc_info.value)

    def test_removal_in_progress(self, client):
        client.response = _Response(
            409, {'message': 'removal of container abc is already in progress'}, 'Conflict')
        with pytest.raises(requests.HTTPError) as exc_info:
            client.remove_container('abc')
        assert is_removal_in_progress(exc_info.value)


def test_stop_timeout_outlives_grace_period(client):
    client.stop_container('web', timeout=10)
    method, url, kwargs = client.requests[0]
    assert url.endswith('/containers/web/stop')
    assert kwargs['params'] == {'t': 10}
    assert kwargs['timeout'] == 40


def test_unsupported_host():
    with pytest.raises(ValueError):
        DockerClient('ssh://user@host')

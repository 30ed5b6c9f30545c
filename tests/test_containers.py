"""Tests for snapshots, opt-in filtering and Compose grouping."""

from containers import (
    COMPOSE_PROJECT_LABEL,
    COMPOSE_SERVICE_LABEL,
    ENABLE_LABEL,
    ContainerSnapshot,
    filter_opted_in,
    group_by_compose_service,
    group_key,
    list_running_snapshots,
    sanitize,
)


def _snapshot(container_id, labels=None, image='nginx:latest'):
    return ContainerSnapshot(id=container_id, name=container_id, image=image, labels=labels or {})


def _compose(container_id, project='myapp', service='web'):
    return _snapshot(container_id, {COMPOSE_PROJECT_LABEL: project, COMPOSE_SERVICE_LABEL: service})


class TestSnapshot:
    def test_from_inspect_strips_leading_slash(self, docker):
        cid = docker.add_container('web', labels={'a': 'b'}, network_mode='container:abc')
        snap = docker.snapshot(cid)

        assert snap.id == cid
        assert snap.name == 'web'
        assert snap.image == 'nginx:latest'
        assert snap.labels == {'a': 'b'}
        assert snap.network_mode == 'container:abc'
        assert snap.env == ('PATH=/usr/bin:/bin',)

    def test_missing_sections(self):
        snap = ContainerSnapshot.from_inspect({'Id': 'abc', 'Config': None, 'HostConfig': None})
        assert snap.labels == {}
        assert snap.network_mode == ''
        assert snap.display_name == 'abc'

    def test_list_running_snapshots_skips_stopped(self, docker):
        docker.add_container('up')
        docker.add_container('down', running=False)
        assert [s.name for s in list_running_snapshots(docker)] == ['up']


class TestFilterOptedIn:
    def test_exact_true_only(self):
        snaps = [
            _snapshot('a', {ENABLE_LABEL: 'true'}),
            _snapshot('b', {ENABLE_LABEL: 'True'}),
            _snapshot('c', {ENABLE_LABEL: 'false'}),
            _snapshot('d', {ENABLE_LABEL: '1'}),
            _snapshot('e', {'other': 'label'}),
            _snapshot('f'),
        ]
        assert [s.id for s in filter_opted_in(snaps)] == ['a']

    def test_empty(self):
        assert filter_opted_in([]) == []


class TestGroupKey:
    def test_compose(self):
        assert group_key(_compose('abc123')) == 'myapp:web'

    def test_standalone(self):
        assert group_key(_snapshot('abc123')) == 'standalone:abc123'

    def test_empty_project_is_standalone(self):
        assert group_key(_compose('abc123', project='')) == 'standalone:abc123'

    def test_empty_service_is_standalone(self):
        assert group_key(_compose('abc123', service='')) == 'standalone:abc123'

    def test_partial_labels_are_standalone(self):
        assert group_key(_snapshot('a', {COMPOSE_PROJECT_LABEL: 'myapp'})) == 'standalone:a'
        assert group_key(_snapshot('b', {COMPOSE_SERVICE_LABEL: 'web'})) == 'standalone:b'


class TestGroupByComposeService:
    def test_same_service_collapses(self):
        groups = group_by_compose_service([_compose('abc123'), _compose('def456')])
        assert list(groups) == ['myapp:web']
        assert [s.id for s in groups['myapp:web']] == ['abc123', 'def456']

    def test_different_services(self):
        groups = group_by_compose_service([_compose('a', service='web'), _compose('b', service='db')])
        assert list(groups) == ['myapp:web', 'myapp:db']

    def test_standalone_never_share(self):
        groups = group_by_compose_service([_snapshot('abc123'), _snapshot('def456')])
        assert list(groups) == ['standalone:abc123', 'standalone:def456']

    def test_is_an_order_preserving_partition(self):
        snaps = [
            _compose('1', service='web'),
            _snapshot('2'),
            _compose('3', service='db'),
            _compose('4', service='web'),
            _snapshot('5', {COMPOSE_PROJECT_LABEL: 'myapp'}),
        ]
        groups = group_by_compose_service(snaps)

        members = [s.id for group in groups.values() for s in group]
        assert sorted(members) == ['1', '2', '3', '4', '5']
        assert list(groups) == ['myapp:web', 'standalone:2', 'myapp:db', 'standalone:5']
        assert [s.id for s in groups['myapp:web']] == ['1', '4']

        again = group_by_compose_service(snaps)
        assert list(again) == list(groups)
        assert {k: [s.id for s in v] for k, v in again.items()} == \
            {k: [s.id for s in v] for k, v in groups.items()}

    def test_empty(self):
        assert group_by_compose_service([]) == {}


def test_sanitize_strips_control_characters():
    assert sanitize("web\n[ERROR] fake\x1b[31m\x7f") == "web[ERROR] fake[31m"
    assert sanitize("plain-name_1") == "plain-name_1"

"""Tests for the JSON state file."""

import json

import pytest

from streamhelper._version import __version__
from streamhelper.exceptions import PersistenceError
from streamhelper.jobs import DownloadJob, JobStatus, ProgressSnapshot
from streamhelper.store import JobStore, QueueState


def _state(make_stream, statuses):
    state = QueueState()
    for i, status in enumerate(statuses):
        job = DownloadJob(job_id=f"job-{i}", stream=make_stream(), status=status)
        state.jobs[job.job_id] = job
        if status == JobStatus.PENDING:
            state.pending.append(job.job_id)
    return state


def test_missing_file_loads_empty(store):
    state = store.load()
    assert state.jobs == {}
    assert state.pending == []


def test_round_trip_requeues_running_jobs_at_head(store, make_stream):
    state = _state(make_stream, [JobStatus.PENDING, JobStatus.RUNNING, JobStatus.PENDING, JobStatus.COMPLETED])
    state.jobs['job-1'].progress = 42.0
    store.save(state)

    loaded = store.load()
    assert list(loaded.jobs) == ['job-0', 'job-1', 'job-2', 'job-3']
    assert loaded.jobs['job-1'].status == JobStatus.PENDING
    assert loaded.pending == ['job-1', 'job-0', 'job-2']
    assert loaded.jobs['job-3'].status == JobStatus.COMPLETED
    assert loaded.jobs['job-0'].stream == state.jobs['job-0'].stream


def test_paused_job_keeps_snapshot(store, make_stream):
    state = _state(make_stream, [JobStatus.PAUSED])
    state.jobs['job-0'].paused_snapshot = ProgressSnapshot(progress=37.5, speed='1.00MiB/s', eta='00:40')
    store.save(state)

    job = store.load().jobs['job-0']
    assert job.status == JobStatus.PAUSED
    assert job.paused_snapshot == ProgressSnapshot(progress=37.5, speed='1.00MiB/s', eta='00:40')


def test_file_layout(store, make_stream):
    store.save(_state(make_stream, [JobStatus.PENDING]))
    payload = json.loads(store.path.read_text(encoding='utf-8'))
    assert payload['version'] == '1'
    assert payload['appVersion'] == __version__
    assert 'timestamp' in payload
    assert payload['downloadQueue'] == ['job-0']
    job_id, record = payload['jobs'][0]
    assert job_id == 'job-0'
    assert record['stream']['pageTitle'].startswith('Stream ')
    assert record['status'] == 'pending'


def test_corrupt_file_is_backed_up(store):
    store.path.parent.mkdir(parents=True)
    store.path.write_text('{"jobs": [', encoding='utf-8')

    state = store.load()
    assert state.jobs == {}
    assert not store.path.exists()
    backups = list(store.path.parent.glob('downloads.*.bak'))
    assert len(backups) == 1
    assert backups[0].read_text(encoding='utf-8') == '{"jobs": ['


def test_wrong_shape_is_treated_as_corrupt(store):
    store.path.parent.mkdir(parents=True)
    store.path.write_text('[1, 2, 3]', encoding='utf-8')
    assert store.load().jobs == {}
    assert list(store.path.parent.glob('downloads.*.bak'))


def test_unreadable_record_is_skipped(store, make_stream):
    store.save(_state(make_stream, [JobStatus.PENDING, JobStatus.PENDING]))
    payload = json.loads(store.path.read_text(encoding='utf-8'))
    payload['jobs'][0][1]['status'] = 'exploded'
    store.path.write_text(json.dumps(payload), encoding='utf-8')

    loaded = store.load()
    assert list(loaded.jobs) == ['job-1']
    assert loaded.pending == ['job-1']


def test_queue_order_drops_stale_ids_and_adds_missing(store, make_stream):
    store.save(_state(make_stream, [JobStatus.PENDING, JobStatus.PENDING, JobStatus.FAILED]))
    payload = json.loads(store.path.read_text(encoding='utf-8'))
    payload['downloadQueue'] = ['job-1', 'ghost', 'job-2', 'job-1']
    store.path.write_text(json.dumps(payload), encoding='utf-8')

    assert store.load().pending == ['job-1', 'job-0']


@pytest.mark.parametrize('entry', [
    ['a', 'oops'],
    'ab',
    42,
    ['b', {'id': 'b', 'status': 'paused', 'pausedSnapshot': '37%'}],
])
def test_non_object_records_are_skipped(store, make_stream, entry):
    store.save(_state(make_stream, [JobStatus.PENDING]))
    payload = json.loads(store.path.read_text(encoding='utf-8'))
    if isinstance(entry, list) and isinstance(entry[1], dict):
        entry[1]['stream'] = payload['jobs'][0][1]['stream']
    payload['jobs'].insert(0, entry)
    store.path.write_text(json.dumps(payload), encoding='utf-8')

    loaded = store.load()
    assert list(loaded.jobs) == ['job-0']
    assert loaded.pending == ['job-0']


@pytest.mark.parametrize('order', [5, 'job-0', {'job-0': 1}])
def test_malformed_queue_order_falls_back_to_table_order(store, make_stream, order):
    store.save(_state(make_stream, [JobStatus.PENDING, JobStatus.PENDING]))
    payload = json.loads(store.path.read_text(encoding='utf-8'))
    payload['downloadQueue'] = order
    store.path.write_text(json.dumps(payload), encoding='utf-8')

    assert store.load().pending == ['job-0', 'job-1']


def test_save_leaves_no_temp_files(store, make_stream):
    store.save(_state(make_stream, [JobStatus.PENDING]))
    store.save(_state(make_stream, [JobStatus.PENDING, JobStatus.PENDING]))
    assert [p.name for p in store.path.parent.iterdir()] == ['downloads.json']


def test_save_fails_when_directory_is_a_file(tmp_path, make_stream):
    blocker = tmp_path / 'blocker'
    blocker.write_text('', encoding='utf-8')
    store = JobStore(blocker / 'downloads.json')
    with pytest.raises(PersistenceError):
        store.save(_state(make_stream, [JobStatus.PENDING]))


@pytest.mark.asyncio
async def test_save_async_round_trip(store, make_stream):
    await store.save_async(_state(make_stream, [JobStatus.PENDING, JobStatus.RUNNING]))
    loaded = store.load()
    assert loaded.pending == ['job-1', 'job-0']
    assert [p.name for p in store.path.parent.iterdir()] == ['downloads.json']


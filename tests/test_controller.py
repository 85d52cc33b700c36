"""Tests for the AppController command routing and event forwarding."""

import asyncio

import pytest

from streamhelper.controller import AppController


def capture(n=1, **overrides):
    data = {
        'url': f'https://cdn.example.com/live{n}/index.m3u8',
        'pageTitle': f'Live {n}',
        'pageUrl': 'https://www.example.com/live',
        'userAgent': 'Mozilla/5.0',
        'timestamp': 1700000000000,
    }
    data.update(overrides)
    return data


def test_capture_is_enqueued(manager):
    controller = AppController(manager)
    result = controller.handle_capture(capture())
    assert result['success'] is True
    assert result['queuePosition'] == -1
    assert manager.get_job(result['jobId']).title == 'Live 1'


def test_invalid_capture_is_reported(manager):
    controller = AppController(manager)
    result = controller.handle_capture({'pageTitle': 'no url'})
    assert result['success'] is False
    assert 'url' in result['error']
    assert manager.jobs == {}


def test_custom_name_is_used_as_title(manager):
    controller = AppController(manager)
    result = controller.handle_command('enqueue', {'stream': capture(customName='  My Clip '), 'priority': 1})
    assert manager.get_job(result['jobId']).title == 'My Clip'


def test_job_commands(manager):
    controller = AppController(manager)
    job_id = controller.handle_capture(capture())['jobId']

    assert controller.handle_command('pause', {'jobId': job_id}) == {'success': True}
    assert controller.handle_command('pause', {'jobId': job_id}) == {'success': False}
    assert controller.handle_command('resume', {'jobId': job_id}) == {'success': True}
    assert controller.handle_command('cancel', {'jobId': job_id}) == {'success': True}
    assert controller.handle_command('retry', {'jobId': job_id}) == {'success': True}
    assert controller.handle_command('remove', {}) == {'success': False, 'error': 'jobId is required'}


def test_query_commands(manager):
    controller = AppController(manager)
    job_id = controller.handle_capture(capture())['jobId']

    jobs = controller.handle_command('list_jobs')['jobs']
    assert [job['id'] for job in jobs] == [job_id]
    assert jobs[0]['stream']['pageTitle'] == 'Live 1'

    job = controller.handle_command('get_job', {'jobId': job_id})['job']
    assert job['status'] == 'running'
    assert controller.handle_command('get_job', {'jobId': 'missing'}) == {'success': False, 'error': 'Job not found'}

    logs = controller.handle_command('get_logs', {'jobId': job_id})['logs']
    assert logs['fullCommand'].startswith('yt-dlp ')

    stats = controller.handle_command('get_stats')['stats']
    assert stats['running'] == 1
    assert stats['total'] == 1


def test_unknown_command(manager):
    result = AppController(manager).handle_command('self_destruct')
    assert result == {'success': False, 'error': 'Unknown command: self_destruct'}


@pytest.mark.parametrize('command', ['pause', 'resume', 'retry', 'cancel', 'remove', 'remove_failed', 'get_job', 'get_logs'])
@pytest.mark.parametrize('job_id', [['x'], {'id': 'x'}, 42, None, ''])
def test_malformed_job_id_is_rejected(manager, command, job_id):
    controller = AppController(manager)
    controller.handle_capture(capture())
    result = controller.handle_command(command, {'jobId': job_id})
    assert result == {'success': False, 'error': 'jobId is required'}
    assert manager.get_stats().running == 1


@pytest.mark.parametrize('payload', [['x'], 'job-1', 7])
def test_non_object_payload_is_rejected(manager, payload):
    controller = AppController(manager)
    for command in ('pause', 'get_job', 'enqueue', 'list_jobs'):
        assert controller.handle_command(command, payload) == {'success': False, 'error': 'payload must be an object'}
    assert manager.jobs == {}


def test_manager_lookups_ignore_non_string_ids(manager):
    assert manager.pause(['x']) is False
    assert manager.cancel({'id': 1}) is False
    assert manager.get_job(3) is None
    assert manager.get_logs(None) is None


def test_bad_priority(manager):
    result = AppController(manager).handle_command('enqueue', {'stream': capture(), 'priority': 'high'})
    assert result['success'] is False


@pytest.mark.asyncio
async def test_forwarder_delivers_events_in_order(manager):
    received = []

    async def sink(event):
        received.append((event.kind, event.job_id))

    controller = AppController(manager, event_sink=sink)
    controller.start_forwarder()
    job_id = controller.handle_capture(capture())['jobId']
    controller.handle_command('pause', {'jobId': job_id})

    await controller.stop()
    assert received == [('added', job_id), ('admitted', job_id), ('paused', job_id)]
    await manager.shutdown()


@pytest.mark.asyncio
async def test_failing_sink_does_not_stop_forwarding(manager):
    received = []

    async def sink(event):
        if event.kind == 'added':
            raise RuntimeError("transport closed")
        received.append(event.kind)

    controller = AppController(manager, event_sink=sink)
    controller.start_forwarder()
    controller.handle_capture(capture())
    await asyncio.wait_for(manager.events.join(), timeout=5)
    assert received == ['admitted']
    await controller.stop()
    await manager.shutdown()

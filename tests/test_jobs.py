"""Tests for the stream descriptor and job records."""

from datetime import timezone

import pytest

from streamhelper.constants import MAX_LOG_LINES, RUN_SEPARATOR
from streamhelper.exceptions import StreamValidationError
from streamhelper.jobs import DownloadJob, JobEvent, JobLogs, JobStatus, ProgressSnapshot, StreamDescriptor


class TestStreamDescriptor:

    def test_accepts_camel_case_capture(self):
        stream = StreamDescriptor.from_capture({
            'url': ' https://cdn.example.com/a/master.m3u8 ',
            'pageTitle': 'A',
            'pageUrl': 'https://example.com/a',
            'userAgent': 'UA',
            'timestamp': 1700000000000,
            'requestHeaders': [{'name': 'X-Token', 'value': 'abc'}],
        })
        assert stream.url == 'https://cdn.example.com/a/master.m3u8'
        assert stream.page_url == 'https://example.com/a'
        assert stream.request_headers[0].name == 'X-Token'
        assert stream.to_record()['pageUrl'] == 'https://example.com/a'

    def test_missing_optional_fields_get_defaults(self):
        stream = StreamDescriptor.from_capture({'url': 'https://cdn.example.com/x.mpd', 'pageTitle': None, 'cookies': None})
        assert stream.page_title == 'Unknown Stream'
        assert stream.cookies == ''
        assert stream.timestamp > 0

    @pytest.mark.parametrize('data', [
        None,
        ['https://cdn.example.com/x.m3u8'],
        {},
        {'url': ''},
        {'url': '/relative/path.m3u8'},
        {'url': 'https://cdn.example.com/x.m3u8', 'timestamp': 'yesterday'},
    ])
    def test_rejects_malformed_data(self, data):
        with pytest.raises(StreamValidationError):
            StreamDescriptor.from_capture(data)

    def test_is_immutable(self, make_stream):
        stream = make_stream()
        with pytest.raises(Exception):
            stream.url = 'https://other.example.com/'

    def test_display_name_prefers_custom_name(self, make_stream):
        assert make_stream(customName='Mine').display_name == 'Mine'
        assert make_stream(customName='   ', pageTitle='Page').display_name == 'Page'


class TestDownloadJob:

    def test_record_round_trip(self, make_stream):
        job = DownloadJob(job_id='abc', stream=make_stream(), status=JobStatus.PAUSED, progress=12.5,
                          speed='1.00MiB/s', eta='00:30', priority=1, retry_count=2,
                          paused_snapshot=ProgressSnapshot(12.5, '1.00MiB/s', '00:30'))
        job.logs.append('stdout', 'line')
        job.logs.exit_code = 1

        record = job.to_record()
        assert record['id'] == 'abc'
        assert record['status'] == 'paused'
        assert record['retryCount'] == 2
        assert record['logs']['exitCode'] == 1

        restored = DownloadJob.from_record(record)
        assert restored == job
        assert restored.created_at.tzinfo is not None

    def test_naive_timestamps_are_read_as_utc(self, make_stream):
        record = DownloadJob(job_id='abc', stream=make_stream()).to_record()
        record['createdAt'] = '2024-01-02T03:04:05'
        assert DownloadJob.from_record(record).created_at.tzinfo == timezone.utc

    @pytest.mark.parametrize('broken', [{'status': 'bogus'}, {'stream': {'pageTitle': 'no url'}}])
    def test_malformed_record_raises(self, make_stream, broken):
        record = DownloadJob(job_id='abc', stream=make_stream()).to_record()
        record.update(broken)
        with pytest.raises((KeyError, TypeError, ValueError)):
            DownloadJob.from_record(record)

    def test_terminal_statuses(self):
        assert {s for s in JobStatus if s.is_terminal} == {JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED}


def test_logs_are_capped():
    logs = JobLogs()
    for i in range(MAX_LOG_LINES + 10):
        logs.append('stderr', f'line {i}')
    assert len(logs.stderr) == MAX_LOG_LINES
    assert logs.stderr[0] == 'line 10'
    assert logs.stdout == []


def test_begin_run_keeps_earlier_output():
    logs = JobLogs(stderr=['ERROR: boom'], full_command='yt-dlp x', exit_code=1, error_details='ERROR: boom')
    logs.begin_run()
    assert logs.stderr == ['ERROR: boom', RUN_SEPARATOR]
    assert logs.stdout == []
    assert (logs.full_command, logs.exit_code) == ('', None)
    assert logs.error_details == 'ERROR: boom'

    fresh = JobLogs()
    fresh.begin_run()
    assert fresh == JobLogs()


def test_event_dict(make_stream):
    job = DownloadJob(job_id='abc', stream=make_stream(), status=JobStatus.FAILED, error='boom')
    assert JobEvent.for_job('failed', job).to_dict() == {
        'type': 'failed',
        'jobId': 'abc',
        'status': 'failed',
        'progress': 0.0,
        'speed': '',
        'eta': '',
        'outputPath': None,
        'error': 'boom',
    }

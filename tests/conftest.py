"""Pytest configuration and fixtures for streamhelper tests."""

import pytest

from streamhelper.config import Settings
from streamhelper.downloads import DownloadManager
from streamhelper.jobs import StreamDescriptor
from streamhelper.store import JobStore


class FakeSupervisor:
    """Records start/terminate calls instead of running yt-dlp."""

    def __init__(self, settings, event_callback):
        self.settings = settings
        self.event_callback = event_callback
        self.started = []
        self.terminated = []
        self.running = set()

    def start(self, job):
        self.started.append(job.job_id)
        self.running.add(job.job_id)
        return ['yt-dlp', job.stream.url, '-o', job.output_template]

    def terminate(self, job_id):
        self.terminated.append(job_id)
        if job_id in self.running:
            self.running.discard(job_id)
            return True
        return False

    async def terminate_all(self):
        for job_id in list(self.running):
            self.terminate(job_id)

    async def finish(self, job_id, return_code=0, output_path='/downloads/out.mp4', message=None):
        """Reports an exit the way ProcessSupervisor does."""
        self.running.discard(job_id)
        if return_code == 0:
            await self.event_callback(('completed', (job_id, output_path, 0)))
        else:
            reason = message or f"yt-dlp exited with code {return_code}"
            await self.event_callback(('failed', (job_id, reason, return_code, None)))


@pytest.fixture
def settings(tmp_path):
    return Settings(
        max_concurrent_downloads=2,
        download_dir=tmp_path / 'downloads',
        state_file=tmp_path / 'state' / 'downloads.json',
        progress_interval=0.05,
    )


@pytest.fixture
def store(settings):
    return JobStore(settings.state_file)


@pytest.fixture
def make_manager(settings, store):
    def factory(**overrides):
        return DownloadManager(settings.model_copy(update=overrides), store, supervisor_factory=FakeSupervisor)
    return factory


@pytest.fixture
def manager(make_manager):
    return make_manager()


@pytest.fixture
def make_stream():
    counter = {'n': 0}

    def factory(**overrides):
        counter['n'] += 1
        data = {
            'url': f"https://cdn.example.com/stream{counter['n']}/master.m3u8",
            'pageTitle': f"Stream {counter['n']}",
            'pageUrl': 'https://www.example.com/watch',
            'userAgent': 'Mozilla/5.0 (X11; Linux x86_64)',
        }
        data.update(overrides)
        return StreamDescriptor.from_capture(data)
    return factory

import logging
import os

import pytest

from streamhelper.logging_config import archive_previous_log, setup_logging


@pytest.fixture
def restore_root_logger():
    root = logging.getLogger()
    saved_handlers, saved_level = list(root.handlers), root.level
    yield
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()
    for handler in saved_handlers:
        root.addHandler(handler)
    root.setLevel(saved_level)


def test_previous_log_is_archived(tmp_path):
    latest = tmp_path / 'latest.log'
    latest.write_text('old run')
    os.utime(latest, (1700000000, 1700000000))

    archive_previous_log(tmp_path)
    archives = [p for p in tmp_path.iterdir()]
    assert len(archives) == 1
    assert archives[0].name.startswith('2023-11-')
    assert archives[0].read_text() == 'old run'


def test_only_newest_archives_are_kept(tmp_path):
    for day in range(1, 6):
        (tmp_path / f'2024-01-0{day}_00-00-00.log').write_text('x')
    archive_previous_log(tmp_path, keep=2)
    assert sorted(p.name for p in tmp_path.iterdir()) == ['2024-01-04_00-00-00.log', '2024-01-05_00-00-00.log']


def test_setup_writes_to_latest_log(tmp_path, restore_root_logger):
    setup_logging('warning', console=False, log_dir=tmp_path)
    logging.getLogger('streamhelper.test').info("hidden")
    logging.getLogger('streamhelper.test').warning("shown")
    for handler in logging.getLogger().handlers:
        handler.flush()

    text = (tmp_path / 'latest.log').read_text(encoding='utf-8')
    assert 'shown' in text
    assert 'hidden' not in text

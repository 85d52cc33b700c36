"""Tests for Settings validation and the ConfigManager file handling."""

import json
from pathlib import Path

import pytest
from pydantic import ValidationError

from streamhelper.config import ConfigManager, Settings


def test_defaults():
    settings = Settings()
    assert settings.max_concurrent_downloads == 3
    assert settings.format_selection == 'bv*+ba/b'
    assert settings.retries == 3
    assert settings.persist_interval == 30.0
    assert settings.yt_dlp_path is None


@pytest.mark.parametrize('field,value', [
    ('max_concurrent_downloads', 0),
    ('max_concurrent_downloads', 21),
    ('retries', -1),
    ('progress_interval', 0),
    ('format_selection', '  '),
    ('log_level', 'LOUD'),
])
def test_rejects_invalid_values(field, value):
    with pytest.raises(ValidationError):
        Settings(**{field: value})


def test_normalizes_values():
    settings = Settings(log_level='debug', download_dir='~/clips', format_selection=' best ')
    assert settings.log_level == 'DEBUG'
    assert settings.download_dir == Path.home() / 'clips'
    assert settings.format_selection == 'best'


def test_missing_file_is_created_with_defaults(tmp_path):
    config_path = tmp_path / 'conf' / 'config.json'
    settings = ConfigManager(config_path).load()
    assert settings == Settings()
    assert json.loads(config_path.read_text(encoding='utf-8'))['max_concurrent_downloads'] == 3


def test_saved_settings_load_back(tmp_path):
    manager = ConfigManager(tmp_path / 'config.json')
    manager.save(Settings(max_concurrent_downloads=7, yt_dlp_path=tmp_path / 'yt-dlp'))
    loaded = manager.load()
    assert loaded.max_concurrent_downloads == 7
    assert loaded.yt_dlp_path == tmp_path / 'yt-dlp'


def test_invalid_file_is_backed_up(tmp_path):
    config_path = tmp_path / 'config.json'
    config_path.write_text('{"max_concurrent_downloads": 99}', encoding='utf-8')

    settings = ConfigManager(config_path).load()
    assert settings == Settings()
    assert not config_path.exists()
    assert len(list(tmp_path.glob('config.*.bak'))) == 1


def test_overrides_are_validated():
    base = Settings()
    assert ConfigManager.with_overrides(base, max_concurrent_downloads=None) is base
    assert ConfigManager.with_overrides(base, max_concurrent_downloads=5).max_concurrent_downloads == 5
    with pytest.raises(ValidationError):
        ConfigManager.with_overrides(base, max_concurrent_downloads=0)


def test_unwritable_config_is_not_fatal(tmp_path):
    blocker = tmp_path / 'blocker'
    blocker.write_text('', encoding='utf-8')
    manager = ConfigManager(blocker / 'config.json')
    assert manager.save(Settings()) is False
    assert manager.load() == Settings()

import json

import pytest
from pydantic import ValidationError

from ytdl_jobs.config import ConfigManager, Settings, is_valid_quality


@pytest.mark.parametrize('value, valid', [
    ('best', True), ('BEST', True), ('1080', True), ('192K', True), ('320k', True),
    ('', False), ('7', False), ('high', False), ('192kbps', False),
])
def test_is_valid_quality(value, valid):
    assert is_valid_quality(value) is valid


def test_settings_normalise_and_validate():
    settings = Settings(log_level='debug', default_format='VIDEO')
    assert (settings.log_level, settings.default_format) == ('DEBUG', 'video')

    for bad in ({'log_level': 'chatty'}, {'default_format': 'gif'}, {'max_concurrent_downloads': 21},
                {'cleanup_interval': 0}, {'default_quality': 'ultra'}, {'download_dir': '/srv/../etc'}):
        with pytest.raises(ValidationError):
            Settings(**bad)


def test_load_creates_default_file(tmp_path):
    path = tmp_path / 'conf' / 'config.json'
    settings = ConfigManager(path).load()

    assert settings == Settings()
    assert json.loads(path.read_text(encoding='utf-8'))['max_concurrent_downloads'] == 0


def test_load_round_trips_saved_settings(tmp_path):
    path = tmp_path / 'config.json'
    manager = ConfigManager(path)
    manager.save(Settings(max_concurrent_downloads=3, download_dir=tmp_path / 'dl'))

    loaded = manager.load()
    assert loaded.max_concurrent_downloads == 3
    assert loaded.download_dir == tmp_path / 'dl'


def test_corrupt_file_is_backed_up(tmp_path):
    path = tmp_path / 'config.json'
    path.write_text('{"max_concurrent_downloads": "lots"', encoding='utf-8')

    settings = ConfigManager(path).load()

    assert settings == Settings()
    assert not path.exists()
    assert len(list(tmp_path.glob('config.*.bak'))) == 1

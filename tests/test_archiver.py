import shutil
import sys
import zipfile

import pytest

from ytdl_jobs import archiver
from ytdl_jobs.archiver import build_archive_command, create_archive
from ytdl_jobs.constants import sanitize_filename
from ytdl_jobs.exceptions import ArchiveError


def test_sanitize_filename():
    assert sanitize_filename('AC/DC: Live?') == 'AC_DC_ Live_'
    assert sanitize_filename('  ...  ') == 'playlist'
    assert len(sanitize_filename('x' * 300)) == 120


@pytest.mark.skipif(sys.platform == 'win32', reason="POSIX archiver")
def test_posix_command_uses_junk_paths():
    assert build_archive_command('Mix.zip', ['001 - a.mp3', '002 - b.mp3']) == [
        'zip', '-q', '-j', 'Mix.zip', '001 - a.mp3', '002 - b.mp3',
    ]


@pytest.mark.asyncio
@pytest.mark.skipif(sys.platform == 'win32' or shutil.which('zip') is None, reason="needs Info-ZIP")
async def test_create_archive_bundles_files(tmp_path):
    files = []
    for name in ('001 - a.mp3', '002 - b.mp3'):
        path = tmp_path / name
        path.write_bytes(name.encode())
        files.append(path)

    archive = await create_archive(tmp_path, files, 'Road/Trip')

    assert archive.name == 'Road_Trip.zip'
    with zipfile.ZipFile(archive) as bundle:
        assert sorted(bundle.namelist()) == ['001 - a.mp3', '002 - b.mp3']


@pytest.mark.asyncio
async def test_missing_archiver_raises(tmp_path, monkeypatch):
    monkeypatch.setattr(archiver, 'build_archive_command', lambda name, files: ['no-such-archiver-binary', name])
    (tmp_path / 'a.mp3').write_bytes(b'x')

    with pytest.raises(ArchiveError):
        await create_archive(tmp_path, [tmp_path / 'a.mp3'], 'Mix')


@pytest.mark.asyncio
async def test_failing_archiver_raises(tmp_path, monkeypatch):
    monkeypatch.setattr(archiver, 'build_archive_command',
                        lambda name, files: [sys.executable, '-c', 'import sys; sys.exit(3)'])

    with pytest.raises(ArchiveError, match='code 3'):
        await create_archive(tmp_path, [], 'Mix')

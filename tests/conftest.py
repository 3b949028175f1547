import sys
import textwrap
from pathlib import Path

import pytest
import pytest_asyncio

from ytdl_jobs.config import Settings
from ytdl_jobs.controller import JobController

# Behaviour is chosen by the last word of the URL path.
FAKE_YT_DLP = '''
import os
import sys
import time

args = sys.argv[1:]
if '--version' in args:
    print('2024.01.01')
    sys.exit(0)

out_dir = os.path.dirname(args[args.index('-o') + 1])
mode = args[-1].rstrip('/').rsplit('/', 1)[-1]

def say(line):
    print(line, flush=True)

def produce(name, data=b'media'):
    path = os.path.join(out_dir, name)
    say('[download] Destination: ' + path)
    say('[download]  42.0% of 3.00MiB at 1.00MiB/s ETA 00:02')
    with open(path, 'wb') as f:
        f.write(data)
    say('[download] 100% of 3.00MiB in 00:03')

if mode == 'single':
    produce('Song Title.mp3')
    with open(os.path.join(out_dir, 'Song Title.jpg'), 'wb') as f:
        f.write(b'thumb')
    sys.exit(0)

if mode == 'playlist':
    say('[download] Downloading playlist: Road Trip')
    say('[download] Downloading item 1 of 2')
    produce('001 - First.mp3')
    say('[download] Downloading item 2 of 2')
    time.sleep(0.3)
    print('ERROR: [youtube] abc123: Video unavailable', file=sys.stderr, flush=True)
    sys.exit(1)

if mode == 'empty':
    print('ERROR: [youtube] abc123: Private video. Sign in if you have been granted access', file=sys.stderr, flush=True)
    sys.exit(1)

if mode == 'slow':
    say('[download] Destination: ' + os.path.join(out_dir, 'Slow.mp3'))
    with open(os.path.join(out_dir, 'Slow.mp3.part'), 'wb') as f:
        f.write(b'partial')
    say('[download]  10.0% of 3.00MiB at 1.00MiB/s ETA 00:30')
    time.sleep(60)
    sys.exit(0)

sys.exit(2)
'''


@pytest.fixture
def fake_yt_dlp(tmp_path) -> Path:
    script = tmp_path / 'bin' / 'yt-dlp'
    script.parent.mkdir()
    script.write_text(f"#!{sys.executable}\n" + textwrap.dedent(FAKE_YT_DLP), encoding='utf-8')
    script.chmod(0o755)
    return script


@pytest.fixture
def settings(tmp_path, fake_yt_dlp) -> Settings:
    return Settings(
        download_dir=tmp_path / 'downloads',
        yt_dlp_path=fake_yt_dlp,
        cookies_file=None,
        startup_cleanup=False,
        cleanup_max_age=1,
    )


@pytest_asyncio.fixture
async def controller(settings):
    controller = JobController(settings)
    await controller.start()
    yield controller
    await controller.shutdown()

import pytest

from ytdl_jobs.exceptions import RangeNotSatisfiableError
from ytdl_jobs.streaming import ArtifactSlice, parse_range


@pytest.mark.parametrize('header, expected', [
    (None, None),
    ('', None),
    ('bytes=0-99', (0, 99)),
    ('bytes=100-', (100, 999)),
    ('bytes=-200', (800, 999)),
    ('bytes=900-5000', (900, 999)),
    ('bytes=-5000', (0, 999)),
])
def test_parse_range(header, expected):
    assert parse_range(header, 1000) == expected


@pytest.mark.parametrize('header', ['bytes=1000-', 'bytes=50-10', 'bytes=-0', 'bytes=-', 'items=0-1', 'bytes=0-1,5-6'])
def test_parse_range_rejects(header):
    with pytest.raises(RangeNotSatisfiableError):
        parse_range(header, 1000)


@pytest.mark.asyncio
async def test_slice_reads_window_and_reports_completion(tmp_path):
    path = tmp_path / 'clip.mp4'
    path.write_bytes(bytes(range(10)))
    calls = []

    async def done():
        calls.append(True)

    artifact = ArtifactSlice(job_id='j', path=path, name=path.name, size=10, start=3, end=5,
                             partial=True, on_complete=done)

    assert artifact.length == 3
    assert artifact.content_type == 'video/mp4'
    assert artifact.content_range == 'bytes 3-5/10'
    chunks = [chunk async for chunk in artifact.chunks(chunk_size=2)]
    assert chunks == [bytes([3, 4]), bytes([5])]
    assert calls == [True]

import pytest

from ytdl_jobs.jobs import DownloadJob
from ytdl_jobs.progress import (
    LineBuffer, ProgressExtractor, ProgressUpdate, TrackBoundary, Destination,
    PlaylistName, TrackSkipped, condense_error, display_title,
)


def test_line_buffer_holds_partial_lines():
    buffer = LineBuffer()
    assert buffer.feed(b'[download]  1') == []
    assert buffer.feed(b'0.0% of 1MiB\r[download]  20.0%') == ['[download]  10.0% of 1MiB']
    assert buffer.feed(b' of 1MiB\n\n') == ['[download]  20.0% of 1MiB']
    assert buffer.flush() == []


def test_line_buffer_decodes_split_multibyte_characters():
    buffer = LineBuffer()
    encoded = 'Destination: Café\n'.encode('utf-8')
    split = encoded.index(b'\xc3') + 1
    assert buffer.feed(encoded[:split]) == []
    assert buffer.feed(encoded[split:]) == ['Destination: Café']


def test_line_buffer_flushes_unterminated_tail():
    buffer = LineBuffer()
    buffer.feed(b'ERROR: something broke')
    assert buffer.flush() == ['ERROR: something broke']


@pytest.mark.parametrize('line, expected', [
    ('[download]  42.5% of ~3.20MiB at 1.10MiB/s ETA 00:03',
     ProgressUpdate(42.5, speed='1.10MiB/s', eta='00:03', size_label='3.20MiB')),
    ('[download] 100% of 3.20MiB in 00:02', ProgressUpdate(100.0, size_label='3.20MiB')),
    ('[download]   0.0% of 3.20MiB at Unknown B/s ETA Unknown', ProgressUpdate(0.0, size_label='3.20MiB')),
    ('[download] Downloading item 3 of 12', TrackBoundary(3, 12)),
    ('[download] Downloading video 1 of 2', TrackBoundary(1, 2)),
    ('[download] Destination: /data/job/001 - Intro.f251.webm', Destination('001 - Intro')),
    ('[ExtractAudio] Destination: /data/job/001 - Intro.mp3', Destination('001 - Intro')),
    ('[Merger] Merging formats into "/data/job/Clip.mp4"', Destination('Clip')),
    ('[download] /data/job/Clip.mp4 has already been downloaded', Destination('Clip')),
    ('[download] Downloading playlist: Road Trip', PlaylistName('Road Trip')),
    ('ERROR: [youtube] xyz: Video unavailable', TrackSkipped('ERROR: [youtube] xyz: Video unavailable')),
    ('[youtube] xyz: Downloading webpage', None),
])
def test_classify(line, expected):
    assert ProgressExtractor().classify(line) == expected


def test_extractor_remembers_last_error():
    extractor = ProgressExtractor()
    extractor.classify('ERROR: [youtube] one: First problem')
    extractor.classify('ERROR: [youtube] two: Second problem')
    extractor.classify('[download] 5.0% of 1MiB')
    assert extractor.error_message == 'Second problem'


def test_custom_rule_table_is_first_match_wins():
    extractor = ProgressExtractor(rules=[lambda line: PlaylistName('first'), lambda line: PlaylistName('second')])
    assert extractor.classify('anything') == PlaylistName('first')


def test_track_boundary_resets_current_file():
    job = DownloadJob(job_id='j', url='u', is_playlist=True)
    ProgressUpdate(80.0, speed='1MiB/s', eta='00:01').apply(job)
    Destination('Old').apply(job)

    TrackBoundary(2, 5).apply(job)

    assert (job.percent, job.current_title, job.speed, job.eta) == (0, None, None, None)
    assert (job.current_track_index, job.total_tracks) == (2, 5)
    assert TrackBoundary.force_write and TrackBoundary.touches_metadata


def test_destination_records_each_title_once():
    job = DownloadJob(job_id='j', url='u')
    Destination('Clip').apply(job)
    Destination('Clip').apply(job)
    assert job.track_titles == ['Clip']


def test_skip_falls_back_to_track_number():
    job = DownloadJob(job_id='j', url='u', is_playlist=True)
    TrackBoundary(4, 9).apply(job)
    TrackSkipped('private video').apply(job)
    assert job.skipped_titles == ['Track 4']


def test_progress_update_clamps_percent():
    job = DownloadJob(job_id='j', url='u')
    ProgressUpdate(180.0).apply(job)
    assert job.percent == 100


def test_display_title_strips_format_suffix():
    assert display_title('"/tmp/x/Song.f137.mp4"') == 'Song'
    assert display_title('Plain.mp3') == 'Plain'


def test_condense_error_truncates():
    assert condense_error('ERROR: [generic] id: Unable to download') == 'Unable to download'
    long = condense_error('ERROR: ' + 'x' * 500)
    assert len(long) == 203 and long.endswith('...')

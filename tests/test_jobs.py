import pytest

from ytdl_jobs.jobs import DownloadJob, JobStatus, clamp_percent, new_job_id


def test_clamp_percent():
    assert clamp_percent(-3) == 0
    assert clamp_percent(57.5) == 57.5
    assert clamp_percent(250) == 100


def test_job_ids_are_unique_hex():
    first, second = new_job_id(), new_job_id()
    assert first != second
    assert len(first) == 32 and int(first, 16) >= 0


def test_playlist_overall_progress_counts_finished_tracks():
    job = DownloadJob(job_id='j', url='u', is_playlist=True, status=JobStatus.PLAYLIST_PROCESSING,
                      total_tracks=4, current_track_index=3, percent=50)
    assert job.overall_progress() == pytest.approx(62.5)


def test_completed_job_reports_full_progress():
    job = DownloadJob(job_id='j', url='u', status=JobStatus.COMPLETED, percent=12)
    assert job.overall_progress() == 100
    assert job.to_status() == {'status': 'complete', 'progress': 100.0}


@pytest.mark.parametrize('status, disk_status', [
    (JobStatus.PENDING, 'queued'),
    (JobStatus.PROCESSING, 'downloading'),
    (JobStatus.FAILED, 'failed'),
    (JobStatus.INTERRUPTED, 'interrupted'),
])
def test_disk_status_vocabulary(status, disk_status):
    assert DownloadJob(job_id='j', url='u', status=status).to_status()['status'] == disk_status


def test_documents_restore_playlist_job():
    job = DownloadJob(
        job_id='abc', url='https://example.com/list', format='video', quality='720', is_playlist=True,
        status=JobStatus.PLAYLIST_PROCESSING, playlist_title='Mix', total_tracks=3, current_track_index=2,
        track_titles=['One', 'Two'], skipped_titles=['Three'], percent=40,
    )
    restored = DownloadJob.from_documents(job.to_metadata(), job.to_status())

    assert restored.status == JobStatus.PLAYLIST_PROCESSING
    assert restored.title == 'Mix'
    assert (restored.format, restored.quality) == ('video', '720')
    assert restored.track_titles == ['One', 'Two']
    assert restored.skipped_titles == ['Three']
    assert restored.percent == pytest.approx(job.overall_progress(), abs=0.1)


def test_documents_reject_unknown_status():
    job = DownloadJob(job_id='abc', url='u')
    with pytest.raises(ValueError):
        DownloadJob.from_documents(job.to_metadata(), {'status': 'exploded', 'progress': 0})
    with pytest.raises(KeyError):
        DownloadJob.from_documents({'url': 'u'}, job.to_status())


def test_reset_progress_keeps_track_history():
    job = DownloadJob(job_id='j', url='u', percent=70, speed='1MiB/s', error_message='boom', track_titles=['A'])
    job.reset_progress()
    assert (job.percent, job.speed, job.error_message) == (0, None, None)
    assert job.track_titles == ['A']

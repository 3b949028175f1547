import json

import pytest

from ytdl_jobs.constants import MISSING_OUTPUT_MESSAGE
from ytdl_jobs.jobs import DownloadJob, JobStatus
from ytdl_jobs.persistence import JobPersistence, find_media_files


def read_status(root, job_id):
    return json.loads((root / job_id / 'status.json').read_text(encoding='utf-8'))


async def persist(persistence, job):
    await persistence.ensure_job_dir(job.job_id)
    await persistence.save(job)


def test_find_media_files_skips_partials_and_sidecars(tmp_path):
    for name, data in [
        ('b.mp3', b'x'), ('a.mp4', b'x'), ('c.mp3.part', b'x'), ('c.f137.mp4', b'x'),
        ('thumb.jpg', b'x'), ('list.zip', b'x'), ('empty.mp3', b''), ('metadata.json', b'{}'),
        ('.hidden.mp3', b'x'), ('d.temp.mp4', b'x'), ('e.mp4.part-Frag3', b'x'),
    ]:
        (tmp_path / name).write_bytes(data)
    assert [p.name for p in find_media_files(tmp_path)] == ['a.mp4', 'b.mp3']


def test_find_media_files_missing_directory(tmp_path):
    assert find_media_files(tmp_path / 'gone') == []


@pytest.mark.asyncio
async def test_recover_round_trip(tmp_path):
    persistence = JobPersistence(tmp_path)
    output = tmp_path / 'done' / 'Song.mp3'
    done = DownloadJob(job_id='done', url='https://a', status=JobStatus.COMPLETED, percent=100,
                       output_path=str(output), output_name='Song.mp3', current_title='Song')
    await persist(persistence, done)
    output.write_bytes(b'media')

    [restored] = await JobPersistence(tmp_path).recover(purge=False)

    assert restored.job_id == 'done'
    assert restored.status == JobStatus.COMPLETED
    assert restored.output_path == str(output)
    assert restored.title == 'Song'


@pytest.mark.asyncio
async def test_recover_marks_unfinished_jobs_interrupted(tmp_path):
    persistence = JobPersistence(tmp_path)
    for job_id in ('one', 'two'):
        job = DownloadJob(job_id=job_id, url='https://a', status=JobStatus.COMPLETED)
        await persist(persistence, job)
        (tmp_path / job_id / 'out.mp3').write_bytes(b'media')
        job.output_path = str(tmp_path / job_id / 'out.mp3')
        await persistence.save(job)
    running = DownloadJob(job_id='three', url='https://a', status=JobStatus.PROCESSING, percent=40)
    await persist(persistence, running)

    jobs = {job.job_id: job for job in await JobPersistence(tmp_path).recover(purge=False)}

    assert {job_id: job.status for job_id, job in jobs.items()} == {
        'one': JobStatus.COMPLETED, 'two': JobStatus.COMPLETED, 'three': JobStatus.INTERRUPTED,
    }
    assert read_status(tmp_path, 'three') == {'status': 'interrupted', 'progress': 40.0}


@pytest.mark.asyncio
async def test_recover_queued_job_becomes_interrupted(tmp_path):
    persistence = JobPersistence(tmp_path)
    await persist(persistence, DownloadJob(job_id='q', url='https://a'))

    [job] = await JobPersistence(tmp_path).recover(purge=False)
    assert job.status == JobStatus.INTERRUPTED


@pytest.mark.asyncio
async def test_recover_completed_job_without_output_fails(tmp_path):
    persistence = JobPersistence(tmp_path)
    job = DownloadJob(job_id='lost', url='https://a', status=JobStatus.COMPLETED,
                      output_path=str(tmp_path / 'lost' / 'gone.mp3'))
    await persist(persistence, job)

    [restored] = await JobPersistence(tmp_path).recover(purge=False)

    assert restored.status == JobStatus.FAILED
    assert restored.error_message == MISSING_OUTPUT_MESSAGE
    assert read_status(tmp_path, 'lost')['status'] == 'failed'


@pytest.mark.asyncio
async def test_recover_relocates_moved_output(tmp_path):
    persistence = JobPersistence(tmp_path)
    job = DownloadJob(job_id='moved', url='https://a', status=JobStatus.COMPLETED,
                      output_path='/elsewhere/old.mp3', output_name='old.mp3')
    await persist(persistence, job)
    (tmp_path / 'moved' / 'new.mp3').write_bytes(b'media')

    [restored] = await JobPersistence(tmp_path).recover(purge=False)

    assert restored.status == JobStatus.COMPLETED
    assert restored.output_name == 'new.mp3'


@pytest.mark.asyncio
async def test_recover_skips_unreadable_directories(tmp_path):
    persistence = JobPersistence(tmp_path)
    await persist(persistence, DownloadJob(job_id='good', url='https://a', status=JobStatus.FAILED))
    (tmp_path / 'broken').mkdir()
    (tmp_path / 'broken' / 'metadata.json').write_text('{not json', encoding='utf-8')
    (tmp_path / 'broken' / 'status.json').write_text('{}', encoding='utf-8')
    (tmp_path / 'half').mkdir()

    jobs = await JobPersistence(tmp_path).recover(purge=False)
    assert [job.job_id for job in jobs] == ['good']


@pytest.mark.asyncio
async def test_recover_with_purge_deletes_everything(tmp_path):
    persistence = JobPersistence(tmp_path)
    await persist(persistence, DownloadJob(job_id='a', url='https://a'))
    (tmp_path / 'stray').mkdir()

    assert await persistence.recover(purge=True) == []
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_status_writes_are_throttled_unless_forced(tmp_path):
    persistence = JobPersistence(tmp_path, status_interval=60)
    job = DownloadJob(job_id='t', url='https://a', status=JobStatus.PROCESSING)
    await persist(persistence, job)

    job.set_percent(30)
    assert await persistence.save_status(job) is False
    assert read_status(tmp_path, 't')['progress'] == 0

    assert await persistence.save_status(job, force=True) is True
    assert read_status(tmp_path, 't')['progress'] == 30


@pytest.mark.asyncio
async def test_stored_progress_never_moves_backwards(tmp_path):
    persistence = JobPersistence(tmp_path, status_interval=0)
    job = DownloadJob(job_id='hw', url='https://a', status=JobStatus.PROCESSING, percent=80)
    await persist(persistence, job)

    job.set_percent(10)
    await persistence.save_status(job)
    assert read_status(tmp_path, 'hw')['progress'] == 80

    persistence.start_run('hw')
    await persistence.save_status(job)
    assert read_status(tmp_path, 'hw')['progress'] == 10


@pytest.mark.asyncio
async def test_writes_do_not_recreate_deleted_directory(tmp_path):
    persistence = JobPersistence(tmp_path)
    job = DownloadJob(job_id='gone', url='https://a')
    await persist(persistence, job)

    assert await persistence.delete_job_dir('gone') is True
    assert await persistence.save(job) is False
    assert not (tmp_path / 'gone').exists()

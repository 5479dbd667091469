from datetime import datetime, timedelta, timezone

from tapecapture.db import make_engine
from tapecapture.models import CaptureJob, JobStatus, utcnow
from tapecapture.persistence import PersistenceAdapter


def make_job(job_id="capture_1", **kw):
    fields = dict(id=job_id, collection_id=3, collection_name="home-movies", output_path=f"/c/{job_id}.dv")
    fields.update(kw)
    return CaptureJob(**fields)


async def test_insert_and_select(persistence):
    job = make_job()
    assert await persistence.insert(job) is True

    stored = await persistence.select(job.id)
    assert stored.id == job.id
    assert stored.status == JobStatus.STARTING
    assert stored.collection_name == "home-movies"
    assert stored.start_time == job.start_time
    assert await persistence.select("missing") is None


async def test_update_tracks_status_and_progress(persistence):
    job = make_job()
    await persistence.insert(job)

    job.status = JobStatus.RUNNING
    job.progress = 42
    assert await persistence.update(job) is True
    stored = await persistence.select(job.id)
    assert (stored.status, stored.progress) == (JobStatus.RUNNING, 42)

    job.status = JobStatus.FAILED
    job.error = "Process exited with code 1."
    job.end_time = utcnow()
    await persistence.update(job)
    stored = await persistence.select(job.id)
    assert stored.error == "Process exited with code 1."
    assert stored.end_time == job.end_time


async def test_timestamps_round_trip_as_aware_utc(persistence):
    job = make_job(status=JobStatus.COMPLETED, end_time=utcnow())
    assert job.start_time.utcoffset() == timedelta(0)
    assert await persistence.insert(job) is True

    stored = await persistence.select(job.id)
    assert stored.start_time == job.start_time
    assert stored.end_time == job.end_time
    assert stored.start_time.tzinfo is not None

    # naive input is taken as UTC
    naive = make_job("capture_naive", start_time=datetime(2024, 3, 5, 14, 7, 9))
    assert await persistence.insert(naive) is True
    stored = await persistence.select("capture_naive")
    assert stored.start_time == datetime(2024, 3, 5, 14, 7, 9, tzinfo=timezone.utc)


async def test_update_reinserts_lost_row(persistence):
    job = make_job(status=JobStatus.RUNNING)
    assert await persistence.update(job) is True
    assert (await persistence.select(job.id)).status == JobStatus.RUNNING


async def test_delete_removes_every_id(persistence):
    for i in range(4):
        await persistence.insert(make_job(f"capture_{i}"))

    assert await persistence.delete(["capture_0", "capture_1", "capture_2"]) is True
    remaining = await persistence.select_all()
    assert [j.id for j in remaining] == ["capture_3"]
    assert await persistence.delete([]) is True


async def test_storage_failures_are_swallowed(tmp_path):
    # tables never created
    broken = PersistenceAdapter(make_engine(f"sqlite:///{tmp_path / 'empty.db'}"))
    job = make_job()

    assert await broken.insert(job) is False
    assert await broken.update(job) is False
    assert await broken.delete([job.id]) is False
    assert await broken.select(job.id) is None
    assert await broken.select_all() == []

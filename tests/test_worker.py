import json
import random
import time
import uuid

import httpx
from sqlalchemy import select

from presetgen.db import Base, make_engine, make_session_factory
from presetgen.errors import TransientError, UnsafeDestination
from presetgen.models import Job, JobState, Preset, PresetModelUsage
from presetgen.service import wire
from presetgen.worker import Worker, WorkerPool

from conftest import FakeProvider, make_catalog


def usage_rows(session_factory, preset_id):
    with session_factory() as db:
        return db.execute(
            select(PresetModelUsage.model_id).where(PresetModelUsage.preset_id == preset_id)
        ).scalars().all()


def queue_one(services, preset):
    queued = services.examples.request_examples(preset, 2)
    return queued[0]


def test_end_to_end_success(services, provider, preset, session_factory, tmp_path):
    queued = queue_one(services, preset)
    worker = services.make_worker()

    assert worker.poll_once(timeout=1) is not None

    job = services.queue.get(queued.job_id)
    assert job.state == "completed"
    assert job.progress == 100
    assert job.attempts == 1
    assert job.result["success"] is True
    assert job.result["model_id"] == queued.model_id
    assert job.result["gender"] == job.payload.model_gender.value
    assert job.result["source_url"] == "https://p.example/x.png"
    assert job.result["path"].endswith(f"preset-examples/{preset}/{queued.model_id}.png")
    assert job.result["url"] == f"https://cdn.test/generated/preset-examples/{preset}/{queued.model_id}.png"
    assert (tmp_path / "out" / "preset-examples" / preset / f"{queued.model_id}.png").exists()

    assert usage_rows(session_factory, preset) == [queued.model_id]
    assert queued.model_id not in services.reservations.active(preset)
    # the preset prompt and the model's reference image went to the provider
    assert provider.calls[0] == ("golden hour portrait", job.payload.model_image_url)


def test_male_job_end_to_end(services, preset, session_factory):
    queued = services.examples.request_examples(preset, 2)
    male = next(q for q in queued if q.gender.value == "MALE")
    worker = services.make_worker()
    worker.poll_once(timeout=1)
    worker.poll_once(timeout=1)

    assert services.queue.get(male.job_id).state == "completed"
    assert sorted(usage_rows(session_factory, preset)) == sorted(q.model_id for q in queued)


def test_progress_reported_before_provider_call(services, provider, preset):
    queued = queue_one(services, preset)
    seen = []
    provider.on_call = lambda: seen.append(services.queue.get(queued.job_id).progress)

    services.make_worker().poll_once(timeout=1)
    assert seen == [30]


def test_redelivered_completed_job_records_usage_once(services, preset, session_factory):
    queued = queue_one(services, preset)
    worker = services.make_worker()
    worker.poll_once(timeout=1)

    assert worker.process(queued.job_id) == JobState.completed
    assert usage_rows(session_factory, preset).count(queued.model_id) == 1


def test_unrecognized_output_fails_on_first_attempt(services, provider, preset, session_factory, r, cfg):
    provider.outputs = [{}]
    queued = queue_one(services, preset)

    services.make_worker().poll_once(timeout=1)

    job = services.queue.get(queued.job_id)
    assert job.state == "failed"
    assert job.attempts == 1
    assert job.failure_reason.startswith("UnexpectedProviderFormat")
    assert r.zcard(cfg.job_delayed) == 0
    assert usage_rows(session_factory, preset) == []
    # the model becomes eligible again
    assert queued.model_id not in services.reservations.active(preset)


def test_non_http_output_fails_on_first_attempt(services, provider, preset, r, cfg):
    provider.outputs = ["not a url at all"]
    queued = queue_one(services, preset)

    services.make_worker().poll_once(timeout=1)

    job = services.queue.get(queued.job_id)
    assert job.state == "failed"
    assert job.attempts == 1
    assert job.failure_reason.startswith("UnexpectedProviderFormat")
    assert r.zcard(cfg.job_delayed) == 0
    assert queued.model_id not in services.reservations.active(preset)


class EscapingSink:
    def store(self, image_url, destination_hint):
        raise UnsafeDestination(f"destination escapes sink directory: {destination_hint}")


def test_unsafe_destination_fails_on_first_attempt(services, preset, r, cfg):
    queued = queue_one(services, preset)
    worker = Worker(services.queue, services.providers, EscapingSink(), services.ledger, services.reservations)

    worker.poll_once(timeout=1)

    job = services.queue.get(queued.job_id)
    assert job.state == "failed"
    assert job.attempts == 1
    assert job.failure_reason.startswith("UnsafeDestination")
    assert r.zcard(cfg.job_delayed) == 0


def test_stored_payload_that_no_longer_validates_fails_once(services, preset, session_factory, r, cfg):
    job_id = str(uuid.uuid4())
    raw = {
        "preset_id": preset,
        "prompt": "x",
        "model_id": "../../../escape",
        "model_name": "escape",
        "model_image_url": "https://assets.test/escape.png",
        "model_gender": "MALE",
        "provider": "replicate",
    }
    with session_factory() as db:
        db.add(Job(id=job_id, state=JobState.waiting, payload=json.dumps(raw), preset_id=preset,
                   model_id=raw["model_id"], progress=0, attempts=0, max_attempts=3))
        db.commit()
    r.lpush(cfg.job_queue, job_id)

    assert services.make_worker().poll_once(timeout=1) == job_id

    with session_factory() as db:
        job = db.get(Job, job_id)
        assert job.state == JobState.failed
        assert job.attempts == 1
        assert job.failure_reason.startswith("InvalidJobPayload")
    assert r.zcard(cfg.job_delayed) == 0
    assert r.llen(cfg.job_processing) == 0


def test_stalled_job_out_of_attempts_frees_its_model(services, preset, r, cfg, clock):
    q = services.queue
    services.reservations.reserve(preset, ["male_01"])
    job_id = q.enqueue({
        "preset_id": preset,
        "prompt": "x",
        "model_id": "male_01",
        "model_name": "male_01",
        "model_image_url": "https://assets.test/male_01.png",
        "model_gender": "MALE",
        "provider": "replicate",
    }, max_attempts=1)

    assert q.reliable_pop(timeout=1) == job_id
    assert q.claim(job_id) is not None
    # the worker dies here
    clock.advance(cfg.stall_timeout_seconds + 1)
    assert q.reap_stalled() == 1

    assert q.get(job_id).state == "failed"
    assert "male_01" in services.reservations.active(preset)

    assert services.make_worker().poll_once(timeout=1) == job_id
    assert "male_01" not in services.reservations.active(preset)
    assert r.llen(cfg.job_processing) == 0


def test_transient_failures_back_off_then_fail(services, provider, preset, session_factory, r, cfg, clock):
    provider.outputs = [TransientError("provider returned 503")]
    queued = queue_one(services, preset)
    job_id = queued.job_id
    worker = services.make_worker()
    q = services.queue

    # only run the job we are watching
    r.delete(cfg.job_queue)
    r.lpush(cfg.job_queue, job_id)

    assert worker.poll_once(timeout=1) == job_id
    assert q.get(job_id).state == "delayed"
    first_retry_at = r.zscore(cfg.job_delayed, job_id)
    assert first_retry_at - clock() >= 2

    clock.advance(1.5)
    assert q.move_due_delayed() == 0
    clock.advance(0.5)
    assert worker.poll_once(timeout=1) == job_id
    assert q.get(job_id).attempts == 2
    second_retry_at = r.zscore(cfg.job_delayed, job_id)
    assert second_retry_at - clock() >= 4

    clock.advance(3)
    assert q.move_due_delayed() == 0
    clock.advance(1)
    assert worker.poll_once(timeout=1) == job_id

    job = q.get(job_id)
    assert job.state == "failed"
    assert job.attempts == 3
    assert "503" in job.failure_reason
    assert len(provider.calls) == 3
    assert usage_rows(session_factory, preset) == []
    assert r.lrange(cfg.job_dlq, 0, -1) == [job_id]


def test_transient_then_success(services, provider, preset, session_factory, r, cfg, clock):
    provider.outputs = [TransientError("timeout"), "https://p.example/ok.jpg"]
    queued = queue_one(services, preset)
    r.delete(cfg.job_queue)
    r.lpush(cfg.job_queue, queued.job_id)
    worker = services.make_worker()

    worker.poll_once(timeout=1)
    clock.advance(2)
    worker.poll_once(timeout=1)

    job = services.queue.get(queued.job_id)
    assert job.state == "completed"
    assert job.attempts == 2
    assert job.result["path"].endswith(".jpg")
    assert usage_rows(session_factory, preset) == [queued.model_id]


def test_download_failure_is_retried_without_partial_output(services, preset, downloads, r, cfg, tmp_path):
    downloads["https://p.example/x.png"] = httpx.Response(500)
    queued = queue_one(services, preset)

    services.make_worker().poll_once(timeout=1)

    assert services.queue.get(queued.job_id).state == "delayed"
    out = tmp_path / "out"
    assert not out.exists() or not [p for p in out.rglob("*") if p.is_file()]


def test_unknown_provider_is_terminal(services, preset, r, cfg):
    job_id = services.queue.enqueue({
        "preset_id": preset,
        "prompt": "x",
        "model_id": "male_01",
        "model_name": "male_01",
        "model_image_url": "https://assets.test/male_01.png",
        "model_gender": "MALE",
        "provider": "midjourney",
    })
    Worker(services.queue, services.providers, services.sink, services.ledger).poll_once(timeout=1)

    job = services.queue.get(job_id)
    assert job.state == "failed"
    assert job.attempts == 1


def test_missing_job_is_acked(services, r, cfg):
    r.lpush(cfg.job_queue, "ghost")
    assert services.make_worker().poll_once(timeout=1) == "ghost"
    assert r.llen(cfg.job_processing) == 0


def test_pool_runs_jobs_concurrently(tmp_path, cfg, r, sink):
    engine = make_engine(f"sqlite+pysqlite:///{tmp_path / 'pool.db'}")
    Base.metadata.create_all(bind=engine)
    session_factory = make_session_factory(engine)
    with session_factory() as db:
        db.add(Preset(id="p", title="pool", provider="replicate", prompt="x"))
        db.commit()

    provider = FakeProvider("https://p.example/x.png")
    services = wire(cfg, session_factory, r, make_catalog(), {"replicate": provider}, sink,
                    rng=random.Random(3))
    queued = services.examples.request_examples("p", 6)

    pool = WorkerPool(services.make_worker, concurrency=2, poll_seconds=0.05,
                      reaper_interval=60, pop_timeout=1)
    pool.start()
    try:
        deadline = time.time() + 20
        while time.time() < deadline:
            states = {services.queue.get(q.job_id).state for q in queued}
            if states == {"completed"}:
                break
            time.sleep(0.1)
    finally:
        pool.stop(timeout=5)

    assert {services.queue.get(q.job_id).state for q in queued} == {"completed"}
    assert sorted(usage_rows(session_factory, "p")) == sorted(q.model_id for q in queued)
    engine.dispose()

"""Shared fixtures: in-memory sqlite, fakeredis, a fake provider and a mocked download transport."""

import random

import fakeredis
import httpx
import pytest

from presetgen.catalog import ModelCatalog
from presetgen.db import Base, make_engine, make_session_factory
from presetgen.models import Preset
from presetgen.service import wire
from presetgen.settings import Settings
from presetgen.sink import LocalSink

PNG_BYTES = b"\x89PNG\r\n\x1a\n" + b"\x00" * 64


class FakeClock:
    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeProvider:
    """Returns (or raises) the scripted outputs in order; repeats the last one."""

    name = "replicate"

    def __init__(self, *outputs):
        self.outputs = list(outputs) or ["https://p.example/out.png"]
        self.calls = []
        self.on_call = None

    def generate(self, prompt, model_image_url):
        self.calls.append((prompt, model_image_url))
        if self.on_call:
            self.on_call()
        out = self.outputs.pop(0) if len(self.outputs) > 1 else self.outputs[0]
        if isinstance(out, BaseException):
            raise out
        return out


def make_catalog(per_gender: int = 10) -> ModelCatalog:
    return ModelCatalog.from_dict({
        "male": [
            {"id": f"male_{i:02d}", "gender": "male", "s3Url": f"https://assets.test/male_{i:02d}.png"}
            for i in range(per_gender)
        ],
        "female": [
            {"id": f"female_{i:02d}", "gender": "female", "s3Url": f"https://assets.test/female_{i:02d}.png"}
            for i in range(per_gender)
        ],
    })


@pytest.fixture
def cfg():
    return Settings(
        database_url="sqlite+pysqlite:///:memory:",
        redis_url="redis://localhost:6379/0",
        job_queue="t:queue",
        job_processing="t:processing",
        job_delayed="t:delayed",
        job_dlq="t:dlq",
        reservation_prefix="t:reserved",
        stall_timeout_seconds=60,
        retention_completed=100,
        retention_failed=100,
    )


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def session_factory():
    engine = make_engine("sqlite+pysqlite:///:memory:")
    Base.metadata.create_all(bind=engine)
    yield make_session_factory(engine)
    engine.dispose()


@pytest.fixture
def r():
    return fakeredis.FakeRedis(decode_responses=True)


@pytest.fixture
def catalog():
    return make_catalog()


@pytest.fixture
def preset(session_factory):
    with session_factory() as db:
        db.add(Preset(id="preset-1", title="Golden hour", provider="replicate", prompt="golden hour portrait"))
        db.commit()
    return "preset-1"


@pytest.fixture
def downloads():
    """Maps url -> httpx.Response; unknown urls answer 200 with png bytes."""
    return {}


@pytest.fixture
def http_client(downloads):
    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if url in downloads:
            resp = downloads[url]
            if isinstance(resp, Exception):
                raise resp
            return resp
        return httpx.Response(200, content=PNG_BYTES, headers={"content-type": "image/png"})

    client = httpx.Client(transport=httpx.MockTransport(handler))
    yield client
    client.close()


@pytest.fixture
def sink(tmp_path, http_client):
    return LocalSink(tmp_path / "out", "https://cdn.test/generated", http_client)


@pytest.fixture
def provider():
    return FakeProvider({"url": "https://p.example/x.png"})


@pytest.fixture
def services(cfg, session_factory, r, catalog, provider, sink, clock):
    return wire(cfg, session_factory, r, catalog, {"replicate": provider}, sink,
                rng=random.Random(1234), clock=clock)

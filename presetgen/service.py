import logging
from dataclasses import dataclass
from typing import Mapping

import httpx
from sqlalchemy.orm import sessionmaker

from .allocator import ModelAllocator
from .catalog import ModelCatalog, ModelRecord
from .db import Base, make_engine, make_session_factory
from .errors import AllocationConflict, InvalidJobPayload, PresetNotFound
from .jobqueue import JobQueue
from .ledger import UsageLedger
from .presets import PresetDirectory
from .provider import GenerationProvider, build_providers
from .redis_client import get_redis
from .reservations import ReservationBook
from .schemas import JobPayload, QueuedExample
from .settings import Settings
from .sink import LocalSink
from .worker import Worker

log = logging.getLogger("service")

RESERVE_ROUNDS = 3

class ExampleService:
    """Allocate models for a preset and queue one generation job per model."""

    def __init__(self, allocator: ModelAllocator, reservations: ReservationBook, queue: JobQueue,
                 presets: PresetDirectory, providers: Mapping[str, GenerationProvider],
                 default_provider: str, default_prompt: str):
        self._allocator = allocator
        self._reservations = reservations
        self._queue = queue
        self._presets = presets
        self._providers = providers
        self._default_provider = default_provider
        self._default_prompt = default_prompt

    def _busy(self, preset_id: str) -> set[str]:
        # reservations cover the gap until the jobs exist, the job rows cover
        # the rest of their life however long they wait in the queue
        return self._reservations.active(preset_id) | self._queue.live_model_ids(preset_id)

    def preview(self, preset_id: str, count: int) -> list[ModelRecord]:
        """Allocation only. Nothing is reserved, queued or recorded."""
        return self._allocator.allocate(preset_id, count, exclude=self._busy(preset_id))

    def _reserve(self, preset_id: str, count: int) -> list[ModelRecord]:
        for round_no in range(1, RESERVE_ROUNDS + 1):
            models = self._allocator.allocate(preset_id, count, exclude=self._busy(preset_id))
            ids = [m.id for m in models]
            got = self._reservations.reserve(preset_id, ids)
            if len(got) == len(ids):
                return models
            # lost some models to a concurrent request, give back the rest and redraw
            self._reservations.release(preset_id, got)
            log.warning(
                f"reservation conflict on round {round_no}",
                extra={"preset_id": preset_id, "event": "reservation_conflict"},
            )
        raise AllocationConflict(f"could not reserve {count} models for preset {preset_id} after {RESERVE_ROUNDS} rounds")

    def request_examples(self, preset_id: str, count: int, prompt: str | None = None,
                         provider: str | None = None) -> list[QueuedExample]:
        preset = self._presets.get(preset_id)
        if preset is None:
            raise PresetNotFound(preset_id)
        provider = provider or preset.provider or self._default_provider
        if provider not in self._providers:
            raise InvalidJobPayload(f"unknown provider: {provider}")
        prompt = prompt or preset.prompt or self._default_prompt

        models = self._reserve(preset_id, count)
        queued = []
        try:
            for m in models:
                payload = JobPayload(
                    preset_id=preset_id,
                    prompt=prompt,
                    model_id=m.id,
                    model_name=m.display_name,
                    model_image_url=m.image_url,
                    model_gender=m.gender,
                    provider=provider,
                )
                job_id = self._queue.enqueue(payload)
                queued.append(QueuedExample(job_id=job_id, model_id=m.id, gender=m.gender))
        except Exception:
            # jobs already queued keep their reservation, the rest go back
            done = {q.model_id for q in queued}
            self._reservations.release(preset_id, [m.id for m in models if m.id not in done])
            raise

        log.info(
            f"queued {len(queued)} example jobs",
            extra={"preset_id": preset_id, "event": "examples_queued"},
        )
        return queued

@dataclass
class Services:
    session_factory: sessionmaker
    redis: object
    catalog: ModelCatalog
    ledger: UsageLedger
    presets: PresetDirectory
    reservations: ReservationBook
    allocator: ModelAllocator
    queue: JobQueue
    providers: Mapping[str, GenerationProvider]
    sink: LocalSink
    examples: ExampleService
    # download client opened by build_services, None when the caller owns it
    http_client: httpx.Client | None = None

    def make_worker(self) -> Worker:
        return Worker(self.queue, self.providers, self.sink, self.ledger, self.reservations)

    def close(self) -> None:
        if self.http_client is not None:
            self.http_client.close()
            self.http_client = None

def wire(cfg: Settings, session_factory: sessionmaker, r, catalog: ModelCatalog,
         providers: Mapping[str, GenerationProvider], sink: LocalSink, rng=None, clock=None) -> Services:
    extra = {"clock": clock} if clock else {}
    ledger = UsageLedger(session_factory)
    presets = PresetDirectory(session_factory)
    reservations = ReservationBook(r, cfg.reservation_ttl_seconds, cfg.reservation_prefix, **extra)
    allocator = ModelAllocator(catalog, ledger, presets, rng=rng)
    queue = JobQueue(r, session_factory, cfg, **extra)
    examples = ExampleService(allocator, reservations, queue, presets, providers,
                              cfg.default_provider, cfg.default_prompt)
    return Services(session_factory, r, catalog, ledger, presets, reservations,
                    allocator, queue, providers, sink, examples)

def build_services(cfg: Settings) -> Services:
    """Process entry point wiring: owns the catalog, the clients and the db."""
    engine = make_engine(cfg.database_url)
    Base.metadata.create_all(bind=engine)
    session_factory = make_session_factory(engine)

    catalog = ModelCatalog.load(cfg.models_file)
    log.info(f"loaded {len(catalog)} models from {cfg.models_file}", extra={"event": "catalog_loaded"})

    providers = build_providers(cfg.replicate_api_token, cfg.replicate_model, cfg.provider_timeout_seconds)
    http_client = httpx.Client(timeout=cfg.download_timeout_seconds)
    sink = LocalSink(cfg.output_dir, cfg.public_base_url, http_client)
    services = wire(cfg, session_factory, get_redis(cfg.redis_url), catalog, providers, sink)
    services.http_client = http_client
    return services

import logging
from typing import Iterable

from sqlalchemy import insert, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session, sessionmaker

from .models import PresetModelUsage

log = logging.getLogger("ledger")

def _insert_ignore(db: Session, rows: list[dict]) -> None:
    """
    INSERT ... ON CONFLICT DO NOTHING on the (preset_id, model_id) unique key.
    dialects without it get one savepoint per row instead.
    """
    dialect = db.get_bind().dialect.name
    if dialect == "postgresql":
        db.execute(postgresql.insert(PresetModelUsage).values(rows).on_conflict_do_nothing())
        return
    if dialect == "sqlite":
        db.execute(sqlite.insert(PresetModelUsage).values(rows).on_conflict_do_nothing())
        return
    for row in rows:
        try:
            with db.begin_nested():
                db.execute(insert(PresetModelUsage).values(**row))
        except IntegrityError:
            # already recorded
            continue

class UsageLedger:
    """Append-only record of which models each preset has consumed."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def record_usage(self, preset_id: str, model_id: str) -> None:
        self.record_many(preset_id, [model_id])

    def record_many(self, preset_id: str, model_ids: Iterable[str]) -> None:
        rows = [{"preset_id": preset_id, "model_id": m} for m in dict.fromkeys(model_ids)]
        if not rows:
            return
        with self._session_factory() as db:
            _insert_ignore(db, rows)
            db.commit()
        log.info(
            f"usage recorded for {len(rows)} model(s)",
            extra={"preset_id": preset_id, "event": "usage_recorded"},
        )

    def list_used(self, preset_id: str) -> set[str]:
        with self._session_factory() as db:
            rows = db.execute(
                select(PresetModelUsage.model_id).where(PresetModelUsage.preset_id == preset_id)
            ).scalars()
            return set(rows)

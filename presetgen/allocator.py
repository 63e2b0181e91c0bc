"""Fair, non-repeating model allocation for preset example runs."""

import logging
import random
from typing import Iterable

from .catalog import Gender, ModelCatalog, ModelRecord
from .errors import InsufficientModels, InvalidAllocationRequest, PresetNotFound
from .ledger import UsageLedger
from .presets import PresetDirectory

log = logging.getLogger("allocator")

class ModelAllocator:
    def __init__(self, catalog: ModelCatalog, ledger: UsageLedger, presets: PresetDirectory,
                 rng: random.Random | None = None):
        self._catalog = catalog
        self._ledger = ledger
        self._presets = presets
        self._rng = rng or random.SystemRandom()

    def eligible(self, preset_id: str, exclude: Iterable[str] = ()) -> dict[Gender, list[ModelRecord]]:
        blocked = self._ledger.list_used(preset_id) | set(exclude)
        return {
            g: [m for m in self._catalog.by_gender(g) if m.id not in blocked]
            for g in Gender
        }

    def allocate(self, preset_id: str, total_count: int, exclude: Iterable[str] = ()) -> list[ModelRecord]:
        """
        Pick total_count models, half of each gender, none of which has
        already been used for (or is reserved against) this preset.

        Reads only; recording usage is up to whoever renders the examples.
        """
        if isinstance(total_count, bool) or not isinstance(total_count, int):
            raise InvalidAllocationRequest(f"model count must be an integer, got {total_count!r}")
        if total_count <= 0 or total_count % 2:
            raise InvalidAllocationRequest(f"model count must be a positive even number, got {total_count}")
        if not self._presets.exists(preset_id):
            raise PresetNotFound(preset_id)

        per_gender = total_count // 2
        pools = self.eligible(preset_id, exclude)

        if any(len(pool) < per_gender for pool in pools.values()):
            available = {g.value: len(pool) for g, pool in pools.items()}
            log.warning(
                f"not enough models: need {per_gender} per gender, have {available}",
                extra={"preset_id": preset_id, "event": "allocation_insufficient"},
            )
            raise InsufficientModels(per_gender, available)

        selected: list[ModelRecord] = []
        for g in Gender:
            pool = list(pools[g])
            # random.shuffle is an in-place Fisher-Yates
            self._rng.shuffle(pool)
            selected.extend(pool[:per_gender])

        log.info(
            f"allocated {len(selected)} models",
            extra={"preset_id": preset_id, "event": "allocation_done"},
        )
        return selected

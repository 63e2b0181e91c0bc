from sqlalchemy.orm import sessionmaker

from .models import Preset

class PresetDirectory:
    """Read-only key-value view over the presets table."""

    def __init__(self, session_factory: sessionmaker):
        self._session_factory = session_factory

    def get(self, preset_id: str) -> Preset | None:
        with self._session_factory() as db:
            return db.get(Preset, preset_id)

    def exists(self, preset_id: str) -> bool:
        return self.get(preset_id) is not None

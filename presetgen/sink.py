import logging
import os
import tempfile
from dataclasses import dataclass
from pathlib import Path, PurePosixPath
from urllib.parse import urlparse

import httpx

from .errors import TransientError, UnsafeDestination

log = logging.getLogger("sink")

IMAGE_SUFFIXES = {".png", ".jpg", ".jpeg", ".webp"}


@dataclass(frozen=True)
class StoredImage:
    path: str
    url: str


def suffix_from_url(url: str, default: str = ".png") -> str:
    suffix = PurePosixPath(urlparse(url).path).suffix.lower()
    return suffix if suffix in IMAGE_SUFFIXES else default


def example_key(preset_id: str, model_id: str, source_url: str) -> str:
    """Deterministic per (preset, model), so a retried job overwrites its own file."""
    return f"preset-examples/{preset_id}/{model_id}{suffix_from_url(source_url)}"


class LocalSink:
    """Stores downloaded images under base_dir and serves them from public_base_url."""

    def __init__(self, base_dir: str | Path, public_base_url: str, http_client: httpx.Client):
        self._base_dir = Path(base_dir)
        self._public_base_url = public_base_url.rstrip("/")
        self._http = http_client

    def url_for(self, key: str) -> str:
        return f"{self._public_base_url}/{key}"

    def store(self, image_url: str, destination_hint: str) -> StoredImage:
        dest = (self._base_dir / destination_hint).resolve()
        if self._base_dir.resolve() not in dest.parents:
            raise UnsafeDestination(f"destination escapes sink directory: {destination_hint}")
        dest.parent.mkdir(parents=True, exist_ok=True)

        # write next to the destination, rename only once the body is complete
        fd, tmp_name = tempfile.mkstemp(dir=dest.parent, prefix=f".{dest.name}.", suffix=".part")
        try:
            with os.fdopen(fd, "wb") as fh:
                with self._http.stream("GET", image_url, follow_redirects=True) as resp:
                    if resp.status_code != 200:
                        raise TransientError(f"failed to download {image_url}: HTTP {resp.status_code}")
                    for chunk in resp.iter_bytes():
                        fh.write(chunk)
            os.replace(tmp_name, dest)
        except httpx.HTTPError as e:
            os.unlink(tmp_name)
            raise TransientError(f"failed to download {image_url}: {e}") from e
        except BaseException:
            os.unlink(tmp_name)
            raise

        log.info(f"stored {destination_hint}", extra={"event": "image_stored"})
        return StoredImage(path=str(dest), url=self.url_for(destination_hint))

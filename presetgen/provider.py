"""Generation provider clients and image-reference normalization.

Providers hand back loosely typed output. Replicate alone may return a URL
string, a FileOutput exposing ``url`` (an attribute in new releases, a method
in old ones), or a list of either. Output is classified into one of the
variants below before anything reads a URL out of it; anything else is
``Unrecognized`` and fails the job as a protocol error.
"""

import logging
from dataclasses import dataclass
from typing import Any, Protocol, Union
from urllib.parse import urlparse

import httpx
import replicate
from replicate.exceptions import ModelError, ReplicateError

from .errors import TransientError, UnexpectedProviderFormat

log = logging.getLogger("provider")


@dataclass(frozen=True)
class DirectUrl:
    url: str


@dataclass(frozen=True)
class UrlAccessor:
    obj: Any


@dataclass(frozen=True)
class Unrecognized:
    shape: str


ImageRef = Union[DirectUrl, UrlAccessor, Unrecognized]


def _has_url(obj: Any) -> bool:
    return not isinstance(obj, (str, bytes, dict, list, tuple)) and hasattr(obj, "url")


def _is_http_url(value: Any) -> bool:
    if not isinstance(value, str):
        return False
    parsed = urlparse(value.strip())
    return parsed.scheme in ("http", "https") and bool(parsed.netloc)


def _classify_item(item: Any) -> ImageRef:
    if isinstance(item, str):
        if not item.strip():
            return Unrecognized("empty string")
        # data: uris, file paths and prose are not something the sink can fetch
        return DirectUrl(item) if _is_http_url(item) else Unrecognized("non-http string")
    if _has_url(item):
        return UrlAccessor(item)
    if isinstance(item, dict) and "url" in item:
        # plain json {"url": ...}, what http providers send back
        return UrlAccessor(item)
    return Unrecognized(type(item).__name__ if item is not None else "None")


def classify_output(output: Any) -> ImageRef:
    if isinstance(output, (list, tuple)):
        if not output:
            return Unrecognized("empty list")
        first = _classify_item(output[0])
        if isinstance(first, Unrecognized):
            return Unrecognized(f"list of {first.shape}")
        return first
    if isinstance(output, dict) and not output:
        return Unrecognized("empty object")
    return _classify_item(output)


def resolve_image_url(output: Any) -> str:
    """Turn raw provider output into a URL string or raise UnexpectedProviderFormat."""
    ref = classify_output(output)
    if isinstance(ref, DirectUrl):
        return ref.url
    if isinstance(ref, UrlAccessor):
        url = ref.obj["url"] if isinstance(ref.obj, dict) else ref.obj.url
        if callable(url):
            url = url()
        if _is_http_url(url):
            return url
        raise UnexpectedProviderFormat(f"{type(ref.obj).__name__} without a usable url")
    raise UnexpectedProviderFormat(ref.shape)


class GenerationProvider(Protocol):
    name: str

    def generate(self, prompt: str, model_image_url: str) -> Any:
        """Render prompt against the reference image. Returns raw provider output."""
        ...


class ReplicateProvider:
    name = "replicate"

    def __init__(self, client: replicate.Client, model: str):
        self._client = client
        self._model = model

    @classmethod
    def from_token(cls, api_token: str | None, model: str, timeout: float) -> "ReplicateProvider":
        client = replicate.Client(api_token=api_token, timeout=httpx.Timeout(timeout))
        return cls(client, model)

    def generate(self, prompt: str, model_image_url: str) -> Any:
        log.info(f"running {self._model}", extra={"event": "provider_call"})
        try:
            return self._client.run(
                self._model,
                input={
                    "prompt": prompt,
                    "image_input": [model_image_url],
                    "output_format": "png",
                },
            )
        except ModelError as e:
            raise TransientError(f"prediction failed: {e}") from e
        except ReplicateError as e:
            raise TransientError(f"replicate error (status {getattr(e, 'status', None)}): {e}") from e
        except httpx.HTTPError as e:
            raise TransientError(f"network error talking to replicate: {e}") from e


def build_providers(api_token: str | None, model: str, timeout: float) -> dict[str, GenerationProvider]:
    return {ReplicateProvider.name: ReplicateProvider.from_token(api_token, model, timeout)}

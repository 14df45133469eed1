"""Model artifact fetching.

Descriptors are addressed by a location string that is one of:

- an ``http://`` or ``https://`` URL, fetched with httpx;
- an ``hf://<owner>/<repo>/<path>`` reference, downloaded from the
  HuggingFace Hub into the local models directory;
- a local filesystem path.
"""

from __future__ import annotations

import logging
from pathlib import Path, PurePosixPath
from typing import TYPE_CHECKING, Protocol

import httpx
from huggingface_hub import hf_hub_download
from huggingface_hub.errors import HfHubHTTPError

from boxinspector.ml.errors import ModelLoadError

if TYPE_CHECKING:
    from boxinspector.config import Settings

logger = logging.getLogger(__name__)

HF_SCHEME = "hf://"


class DescriptorSource(Protocol):
    """Protocol for anything that can fetch a model descriptor."""

    def fetch_descriptor(self, location: str) -> bytes:
        """Return the raw bytes stored at ``location``."""
        ...


def join_location(base: str, filename: str) -> str:
    """Append ``filename`` to a base location of any supported kind."""
    if base.startswith(("http://", "https://", HF_SCHEME)):
        return f"{base.rstrip('/')}/{filename}"
    return str(Path(base) / filename)


def split_hf_location(location: str) -> tuple[str, str | None, str]:
    """Split ``hf://owner/repo/sub/dir/file`` into (repo_id, subfolder, filename)."""
    parts = PurePosixPath(location.removeprefix(HF_SCHEME)).parts
    if len(parts) < 3:
        raise ModelLoadError(f"Invalid HuggingFace location: {location}")
    repo_id = f"{parts[0]}/{parts[1]}"
    subfolder = "/".join(parts[2:-1]) or None
    return repo_id, subfolder, parts[-1]


class ArtifactSource:
    """Fetches descriptor bytes from URLs, the HuggingFace Hub or local disk."""

    def __init__(self, settings: Settings, client: httpx.Client | None = None) -> None:
        self._models_dir = Path(settings.models_dir)
        self._timeout = settings.fetch_timeout
        self._client = client

    def fetch_descriptor(self, location: str) -> bytes:
        if location.startswith(("http://", "https://")):
            return self._fetch_url(location)
        if location.startswith(HF_SCHEME):
            return self._fetch_hf(location)
        return self._fetch_path(Path(location))

    # -- Internal -----------------------------------------------------------

    def _fetch_url(self, url: str) -> bytes:
        try:
            if self._client is not None:
                response = self._client.get(url, follow_redirects=True)
            else:
                response = httpx.get(url, timeout=self._timeout, follow_redirects=True)
            response.raise_for_status()
        except httpx.HTTPError as exc:
            raise ModelLoadError(f"Could not fetch {url}") from exc
        logger.debug("Fetched %s (%d bytes)", url, len(response.content))
        return response.content

    def _fetch_hf(self, location: str) -> bytes:
        repo_id, subfolder, filename = split_hf_location(location)
        self._models_dir.mkdir(parents=True, exist_ok=True)
        try:
            downloaded = hf_hub_download(
                repo_id=repo_id,
                filename=filename,
                subfolder=subfolder,
                local_dir=str(self._models_dir),
            )
        except (HfHubHTTPError, OSError, ValueError) as exc:
            raise ModelLoadError(f"Could not download {location}") from exc
        logger.debug("Downloaded %s to %s", location, downloaded)
        return self._fetch_path(Path(downloaded))

    @staticmethod
    def _fetch_path(path: Path) -> bytes:
        try:
            return path.read_bytes()
        except OSError as exc:
            raise ModelLoadError(f"Could not read {path}") from exc

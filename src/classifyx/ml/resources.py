"""Resource loading: label list, serialized model, and sample image.

Resources are fetched by logical name from a ``ResourceBundle``. The default
bundle reads files below ``Settings.resources_dir``; setting
``CLASSIFYX_MODEL_REPO_ID`` switches to downloading them from the Hugging Face
Hub instead.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from huggingface_hub import hf_hub_download
from huggingface_hub.errors import HfHubHTTPError

from classifyx.errors import ResourceLoadError

if TYPE_CHECKING:
    from classifyx.config import Settings

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Bundles
# ---------------------------------------------------------------------------


class ResourceBundle(Protocol):
    """Protocol for a source of named byte blobs."""

    def read(self, name: str) -> bytes:
        """Return the bytes stored under ``name``.

        Raises:
            ResourceLoadError: If the resource is missing or unreadable.
        """
        ...


class DirectoryResourceBundle:
    """Reads resources from files below a root directory."""

    def __init__(self, root: str | Path) -> None:
        self._root = Path(root)

    @property
    def root(self) -> Path:
        return self._root

    def read(self, name: str) -> bytes:
        path = self._root / name
        try:
            return path.read_bytes()
        except OSError as exc:
            raise ResourceLoadError(f"Cannot read resource '{name}' from {path}: {exc}") from exc


class HubResourceBundle:
    """Downloads resources from a Hugging Face Hub repository."""

    def __init__(self, repo_id: str, local_dir: str | Path) -> None:
        self._repo_id = repo_id
        self._local_dir = Path(local_dir)

    def read(self, name: str) -> bytes:
        try:
            downloaded = Path(
                hf_hub_download(
                    repo_id=self._repo_id,
                    filename=name,
                    local_dir=str(self._local_dir),
                )
            )
        except (HfHubHTTPError, OSError, ValueError) as exc:
            raise ResourceLoadError(f"Cannot download '{name}' from {self._repo_id}: {exc}") from exc

        logger.info("Downloaded %s to %s", name, downloaded)
        try:
            return downloaded.read_bytes()
        except OSError as exc:
            raise ResourceLoadError(f"Cannot read downloaded resource {downloaded}: {exc}") from exc


def bundle_from_settings(settings: Settings) -> ResourceBundle:
    """Pick the resource bundle described by ``settings``."""
    if settings.model_repo_id:
        return HubResourceBundle(settings.model_repo_id, settings.resources_dir)
    return DirectoryResourceBundle(settings.resources_dir)


# ---------------------------------------------------------------------------
# Loader
# ---------------------------------------------------------------------------


def parse_labels(data: bytes) -> tuple[str, ...]:
    """Parse label text into an ordered label set.

    One class name per line; empty lines are dropped and the remaining order
    is the class index used by the model output.
    """
    try:
        text = data.decode("utf-8-sig")
    except UnicodeDecodeError as exc:
        raise ResourceLoadError(f"Label file is not valid UTF-8: {exc}") from exc

    labels = tuple(line for line in text.splitlines() if line)
    if not labels:
        raise ResourceLoadError("Label file contains no labels")
    return labels


@dataclass(frozen=True)
class Resources:
    """Immutable resources shared by every classification call."""

    labels: tuple[str, ...]
    model: bytes
    sample_image: bytes


class ResourceLoader:
    """Reads the label list, model and sample image from a bundle."""

    def __init__(
        self,
        bundle: ResourceBundle,
        labels_name: str,
        model_name: str,
        sample_image_name: str,
    ) -> None:
        self._bundle = bundle
        self._labels_name = labels_name
        self._model_name = model_name
        self._sample_image_name = sample_image_name

    @classmethod
    def from_settings(cls, settings: Settings) -> ResourceLoader:
        return cls(
            bundle_from_settings(settings),
            labels_name=settings.labels_file,
            model_name=settings.model_file,
            sample_image_name=settings.sample_image_file,
        )

    @property
    def model_name(self) -> str:
        return self._model_name

    def load(self) -> Resources:
        """Read all three resources. Blocking; run off the event loop."""
        labels = parse_labels(self._bundle.read(self._labels_name))
        model = self._bundle.read(self._model_name)
        sample_image = self._bundle.read(self._sample_image_name)
        logger.info(
            "Loaded %d labels, model %s (%d bytes), sample image %s (%d bytes)",
            len(labels),
            self._model_name,
            len(model),
            self._sample_image_name,
            len(sample_image),
        )
        return Resources(labels=labels, model=model, sample_image=sample_image)

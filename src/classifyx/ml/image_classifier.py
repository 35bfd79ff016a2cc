"""ImageNet classification of the bundled sample image (or any uploaded image).

Construction and initialization are separate steps: build an
``ImageClassifier``, then ``await ensure_loaded()`` (or let the first
``classify()`` do it). Initialization runs at most once at a time; concurrent
callers join the in-flight attempt, and a failed attempt is retried on the
next call.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from dataclasses import dataclass
from typing import TYPE_CHECKING, TypeVar

import numpy as np

from classifyx.errors import ModelMismatchError, ResourceLoadError
from classifyx.ml.preprocessing import preprocess

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from numpy.typing import NDArray

    from classifyx.ml.engine import EngineFactory, InferenceEngine
    from classifyx.ml.inference import InferencePool
    from classifyx.ml.resources import ResourceLoader, Resources

logger = logging.getLogger(__name__)

T = TypeVar("T")

MODEL_INPUT_NAME: str = "input"
MODEL_OUTPUT_NAME: str = "output"


@dataclass(frozen=True)
class ClassificationResult:
    """A single classification prediction."""

    label: str
    index: int
    confidence: float


def argmax(scores: Sequence[float] | NDArray[np.float32]) -> int:
    """Index of the highest score; ties go to the lowest index."""
    values = np.asarray(scores, dtype=np.float32).ravel()
    if values.size == 0:
        raise ModelMismatchError("Model returned an empty score vector")
    return int(np.argmax(values))


def softmax(scores: Sequence[float] | NDArray[np.float32]) -> NDArray[np.float32]:
    values = np.asarray(scores, dtype=np.float32).ravel()
    shifted = np.exp(values - values.max())
    return shifted / shifted.sum()


@dataclass(frozen=True)
class _Loaded:
    resources: Resources
    engine: InferenceEngine


class ImageClassifier:
    """Classifies images with an ONNX ImageNet model and a label list."""

    def __init__(
        self,
        loader: ResourceLoader,
        engine_factory: EngineFactory,
        pool: InferencePool | None = None,
        max_image_pixels: int | None = None,
    ) -> None:
        self._loader = loader
        self._engine_factory = engine_factory
        self._pool = pool
        self._max_image_pixels = max_image_pixels

        self._loaded: _Loaded | None = None
        self._init_task: asyncio.Task[_Loaded] | None = None
        self._load_lock = threading.Lock()

    # -- Initialization -----------------------------------------------------

    @property
    def is_loaded(self) -> bool:
        return self._loaded is not None

    @property
    def labels(self) -> tuple[str, ...]:
        """Loaded label set, empty before initialization."""
        return self._loaded.resources.labels if self._loaded is not None else ()

    @property
    def model_name(self) -> str:
        return self._loader.model_name

    async def ensure_loaded(self) -> None:
        """Load resources and create the engine, once.

        Raises:
            ResourceLoadError: If a resource or the model cannot be loaded.
        """
        if self._loaded is not None:
            return

        task = self._init_task
        if task is None or (task.done() and (task.cancelled() or task.exception() is not None)):
            logger.info("Initializing classifier resources")
            task = asyncio.create_task(asyncio.to_thread(self._load_once))
            self._init_task = task

        # Shielded so one caller giving up does not cancel the shared attempt.
        self._loaded = await asyncio.shield(task)

    def load_sync(self) -> None:
        """Blocking counterpart of ``ensure_loaded()`` for callers without an event loop."""
        self._load_once()

    def _load_once(self) -> _Loaded:
        # Shared by the sync and async paths so a load never runs twice at once.
        with self._load_lock:
            if self._loaded is None:
                self._loaded = self._load()
            return self._loaded

    def _load(self) -> _Loaded:
        resources = self._loader.load()
        try:
            engine = self._engine_factory(resources.model)
        except Exception as exc:
            raise ResourceLoadError(f"Cannot create inference session for {self._loader.model_name}: {exc}") from exc
        logger.info("Classifier ready (%d labels)", len(resources.labels))
        return _Loaded(resources=resources, engine=engine)

    def _require_loaded(self) -> _Loaded:
        if self._loaded is None:
            raise ResourceLoadError("Classifier resources are not loaded; call ensure_loaded() first")
        return self._loaded

    # -- Inference ----------------------------------------------------------

    def scores(self, tensor: NDArray[np.float32]) -> NDArray[np.float32]:
        """Run the model and return its score vector, one entry per label.

        Raises:
            ModelMismatchError: If the output is missing or its length does not
                match the label count.
        """
        loaded = self._require_loaded()
        outputs = loaded.engine.run({MODEL_INPUT_NAME: tensor})
        if MODEL_OUTPUT_NAME not in outputs:
            raise ModelMismatchError(
                f"Model produced no '{MODEL_OUTPUT_NAME}' output (got {sorted(outputs)})"
            )

        scores = np.asarray(outputs[MODEL_OUTPUT_NAME], dtype=np.float32).ravel()
        label_count = len(loaded.resources.labels)
        if scores.size != label_count:
            raise ModelMismatchError(f"Model returned {scores.size} scores but {label_count} labels are loaded")
        return scores

    def predict_label(self, image: bytes) -> str:
        """Return the top label for ``image``. Requires loaded resources."""
        loaded = self._require_loaded()
        tensor = preprocess(image, max_pixels=self._max_image_pixels)
        return loaded.resources.labels[argmax(self.scores(tensor))]

    def predict_sample(self) -> str:
        """Return the top label for the bundled sample image."""
        return self.predict_label(self._require_loaded().resources.sample_image)

    def predict_top_k(self, image: bytes, top_k: int = 5) -> list[ClassificationResult]:
        """Return the ``top_k`` labels for ``image``, highest confidence first."""
        loaded = self._require_loaded()
        tensor = preprocess(image, max_pixels=self._max_image_pixels)
        probs = softmax(self.scores(tensor))
        ranked = np.argsort(-probs, kind="stable")[:top_k]
        return [
            ClassificationResult(
                label=loaded.resources.labels[int(i)],
                index=int(i),
                confidence=float(probs[i]),
            )
            for i in ranked
        ]

    async def classify(self) -> str:
        """Classify the bundled sample image and return its label."""
        await self.ensure_loaded()
        label = await self._run(self.predict_sample)
        logger.info("Sample image classified as %r", label)
        return label

    def classify_sync(self) -> str:
        """Blocking ``classify()``: load if needed, then classify the sample image."""
        self.load_sync()
        label = self.predict_sample()
        logger.info("Sample image classified as %r", label)
        return label

    async def classify_image(self, image: bytes, top_k: int = 5) -> list[ClassificationResult]:
        """Classify arbitrary encoded image bytes."""
        await self.ensure_loaded()
        return await self._run(self.predict_top_k, image, top_k)

    async def _run(self, func: Callable[..., T], *args: object) -> T:
        if self._pool is not None:
            return await self._pool.run(func, *args)
        return await asyncio.to_thread(func, *args)

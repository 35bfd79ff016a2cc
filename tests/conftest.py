"""Shared fixtures: synthetic images, in-memory resources, and a stub engine."""

from __future__ import annotations

import io
from collections import Counter
from typing import TYPE_CHECKING

import numpy as np
import pytest
from PIL import Image

from classifyx.errors import ResourceLoadError
from classifyx.ml.image_classifier import ImageClassifier
from classifyx.ml.resources import ResourceLoader

if TYPE_CHECKING:
    from collections.abc import Callable

    from numpy.typing import NDArray

    from classifyx.ml.engine import InferenceEngine
    from classifyx.ml.inference import InferencePool

LABELS_NAME = "imagenet_classes.txt"
MODEL_NAME = "mobilenetv2-7.onnx"
SAMPLE_NAME = "SampleImages/dog.png"

NUM_TEST_LABELS = 10
WINNING_INDEX = 7


def encode_png(pixels: NDArray[np.generic]) -> bytes:
    """PNG-encode an HxW (L, or I;16 for uint16), HxWx3 (RGB) or HxWx4 (RGBA) array."""
    buf = io.BytesIO()
    Image.fromarray(pixels).save(buf, format="PNG")
    return buf.getvalue()


def gray_png(width: int = 224, height: int = 224, value: int = 128) -> bytes:
    return encode_png(np.full((height, width, 3), value, dtype=np.uint8))


class StubEngine:
    """Returns fixed outputs and records every input it receives."""

    def __init__(self, outputs: dict[str, NDArray[np.float32]]) -> None:
        self.outputs = outputs
        self.calls: list[dict[str, NDArray[np.float32]]] = []

    def run(self, inputs: dict[str, NDArray[np.float32]]) -> dict[str, NDArray[np.float32]]:
        self.calls.append(inputs)
        return self.outputs


class MemoryBundle:
    """Resource bundle backed by a dict; counts reads per name."""

    def __init__(self, files: dict[str, bytes]) -> None:
        self.files = files
        self.reads: Counter[str] = Counter()

    def read(self, name: str) -> bytes:
        self.reads[name] += 1
        try:
            return self.files[name]
        except KeyError:
            raise ResourceLoadError(f"Missing resource '{name}'") from None


def winning_scores(size: int = NUM_TEST_LABELS, index: int = WINNING_INDEX) -> NDArray[np.float32]:
    scores = np.linspace(-1.0, 1.0, size, dtype=np.float32)[::-1].copy()
    scores[index] = 5.0
    return scores.reshape(1, size)


@pytest.fixture()
def labels() -> list[str]:
    return [f"class_{i}" for i in range(NUM_TEST_LABELS)]


@pytest.fixture()
def bundle(labels: list[str]) -> MemoryBundle:
    return MemoryBundle(
        {
            LABELS_NAME: ("\n".join(labels) + "\n").encode(),
            MODEL_NAME: b"fake-onnx-model",
            SAMPLE_NAME: gray_png(),
        }
    )


@pytest.fixture()
def engine() -> StubEngine:
    return StubEngine({"output": winning_scores()})


@pytest.fixture()
def make_classifier(
    bundle: MemoryBundle, engine: StubEngine
) -> Callable[..., ImageClassifier]:
    """Build a classifier over the in-memory bundle and stub engine."""

    def _make(
        engine_factory: Callable[[bytes], InferenceEngine] | None = None,
        pool: InferencePool | None = None,
        max_image_pixels: int | None = None,
    ) -> ImageClassifier:
        loader = ResourceLoader(bundle, LABELS_NAME, MODEL_NAME, SAMPLE_NAME)
        return ImageClassifier(
            loader,
            engine_factory or (lambda model: engine),
            pool=pool,
            max_image_pixels=max_image_pixels,
        )

    return _make

"""Tests for the classifier: arg-max, initialization, and end-to-end classification."""

from __future__ import annotations

import asyncio
import threading
from typing import TYPE_CHECKING

import numpy as np
import pytest
from conftest import (
    LABELS_NAME,
    NUM_TEST_LABELS,
    SAMPLE_NAME,
    WINNING_INDEX,
    MemoryBundle,
    StubEngine,
    encode_png,
    gray_png,
)

from classifyx.config import Settings
from classifyx.errors import DecodeError, ModelMismatchError, ResourceLoadError
from classifyx.ml.image_classifier import argmax, softmax
from classifyx.ml.inference import InferencePool

if TYPE_CHECKING:
    from collections.abc import Callable

    from classifyx.ml.image_classifier import ImageClassifier


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


class TestArgmax:
    def test_first_maximum_wins(self) -> None:
        assert argmax([0.1, 0.9, 0.9, 0.2]) == 1

    def test_accepts_batched_output(self) -> None:
        assert argmax(np.array([[0.0, -1.0, 3.0]], dtype=np.float32)) == 2

    def test_empty_raises(self) -> None:
        with pytest.raises(ModelMismatchError):
            argmax([])


class TestSoftmax:
    def test_sums_to_one_and_keeps_order(self) -> None:
        probs = softmax([1.0, 3.0, 2.0])
        assert probs.sum() == pytest.approx(1.0)
        assert list(np.argsort(-probs)) == [1, 2, 0]

    def test_large_logits_do_not_overflow(self) -> None:
        probs = softmax([1000.0, 1000.0])
        np.testing.assert_allclose(probs, [0.5, 0.5])


# ---------------------------------------------------------------------------
# Initialization
# ---------------------------------------------------------------------------


class TestEnsureLoaded:
    async def test_populates_labels(
        self, make_classifier: Callable[..., ImageClassifier], labels: list[str]
    ) -> None:
        classifier = make_classifier()
        assert not classifier.is_loaded
        assert classifier.labels == ()

        await classifier.ensure_loaded()

        assert classifier.is_loaded
        assert classifier.labels == tuple(labels)

    async def test_loads_once(self, make_classifier: Callable[..., ImageClassifier], bundle: MemoryBundle) -> None:
        classifier = make_classifier()
        await classifier.ensure_loaded()
        await classifier.ensure_loaded()
        assert bundle.reads[LABELS_NAME] == 1

    async def test_concurrent_callers_share_one_attempt(
        self, make_classifier: Callable[..., ImageClassifier], engine: StubEngine
    ) -> None:
        release = threading.Event()
        created: list[bytes] = []

        def slow_factory(model: bytes) -> StubEngine:
            release.wait(timeout=5)
            created.append(model)
            return engine

        classifier = make_classifier(engine_factory=slow_factory)
        waiters = [asyncio.create_task(classifier.ensure_loaded()) for _ in range(5)]
        await asyncio.sleep(0.05)
        release.set()
        await asyncio.gather(*waiters)

        assert created == [b"fake-onnx-model"]
        assert classifier.is_loaded

    async def test_failure_is_retried(
        self, make_classifier: Callable[..., ImageClassifier], bundle: MemoryBundle
    ) -> None:
        sample = bundle.files.pop(SAMPLE_NAME)
        classifier = make_classifier()

        with pytest.raises(ResourceLoadError):
            await classifier.ensure_loaded()
        assert not classifier.is_loaded

        bundle.files[SAMPLE_NAME] = sample
        await classifier.ensure_loaded()

        assert classifier.is_loaded
        assert bundle.reads[LABELS_NAME] == 2

    async def test_engine_failure_becomes_resource_error(
        self, make_classifier: Callable[..., ImageClassifier]
    ) -> None:
        def broken_factory(model: bytes) -> StubEngine:
            raise RuntimeError("INVALID_PROTOBUF")

        classifier = make_classifier(engine_factory=broken_factory)
        with pytest.raises(ResourceLoadError, match="INVALID_PROTOBUF"):
            await classifier.ensure_loaded()

    async def test_cancelled_caller_does_not_cancel_load(
        self, make_classifier: Callable[..., ImageClassifier], engine: StubEngine
    ) -> None:
        release = threading.Event()

        def slow_factory(model: bytes) -> StubEngine:
            release.wait(timeout=5)
            return engine

        classifier = make_classifier(engine_factory=slow_factory)
        impatient = asyncio.create_task(classifier.ensure_loaded())
        await asyncio.sleep(0.01)
        impatient.cancel()
        with pytest.raises(asyncio.CancelledError):
            await impatient
        release.set()

        await classifier.ensure_loaded()
        assert classifier.is_loaded

    def test_predict_before_load_raises(self, make_classifier: Callable[..., ImageClassifier]) -> None:
        with pytest.raises(ResourceLoadError, match="ensure_loaded"):
            make_classifier().predict_sample()


# ---------------------------------------------------------------------------
# Classification
# ---------------------------------------------------------------------------


class TestClassify:
    async def test_returns_label_at_highest_score(
        self, make_classifier: Callable[..., ImageClassifier], labels: list[str]
    ) -> None:
        label = await make_classifier().classify()
        assert label == labels[WINNING_INDEX]

    async def test_engine_receives_normalized_gray_tensor(
        self, make_classifier: Callable[..., ImageClassifier], engine: StubEngine
    ) -> None:
        await make_classifier().classify()

        assert len(engine.calls) == 1
        inputs = engine.calls[0]
        assert list(inputs) == ["input"]
        tensor = inputs["input"]
        assert tensor.shape == (1, 3, 224, 224)
        assert tensor.dtype == np.float32
        assert tensor[0, 0, 0, 0] == pytest.approx((128 / 255 - 0.485) / 0.229, abs=1e-3)
        assert tensor[0, 1, 100, 100] == pytest.approx((128 / 255 - 0.456) / 0.224, abs=1e-3)
        assert tensor[0, 2, 223, 223] == pytest.approx((128 / 255 - 0.406) / 0.225, abs=1e-3)

    async def test_missing_output_raises(
        self, make_classifier: Callable[..., ImageClassifier], engine: StubEngine
    ) -> None:
        engine.outputs = {"logits": engine.outputs["output"]}
        with pytest.raises(ModelMismatchError, match="'output'"):
            await make_classifier().classify()

    async def test_score_length_mismatch_raises(
        self, make_classifier: Callable[..., ImageClassifier], engine: StubEngine
    ) -> None:
        engine.outputs = {"output": np.zeros((1, NUM_TEST_LABELS + 1), dtype=np.float32)}
        with pytest.raises(ModelMismatchError, match="11 scores but 10 labels"):
            await make_classifier().classify()

    async def test_bad_sample_image_raises_decode_error(
        self, make_classifier: Callable[..., ImageClassifier], bundle: MemoryBundle
    ) -> None:
        bundle.files[SAMPLE_NAME] = b"not an image"
        with pytest.raises(DecodeError):
            await make_classifier().classify()

    async def test_classify_through_pool(
        self, make_classifier: Callable[..., ImageClassifier], labels: list[str]
    ) -> None:
        pool = InferencePool(Settings(max_concurrent=1))
        try:
            label = await make_classifier(pool=pool).classify()
        finally:
            pool.shutdown()
        assert label == labels[WINNING_INDEX]


class TestClassifySync:
    def test_loads_and_returns_label(
        self, make_classifier: Callable[..., ImageClassifier], labels: list[str]
    ) -> None:
        classifier = make_classifier()
        assert classifier.classify_sync() == labels[WINNING_INDEX]
        assert classifier.is_loaded

    def test_load_is_shared_with_async_path(
        self, make_classifier: Callable[..., ImageClassifier], bundle: MemoryBundle
    ) -> None:
        classifier = make_classifier()
        classifier.classify_sync()
        classifier.classify_sync()
        asyncio.run(classifier.ensure_loaded())
        assert bundle.reads[LABELS_NAME] == 1

    def test_failure_is_retried(
        self, make_classifier: Callable[..., ImageClassifier], bundle: MemoryBundle, labels: list[str]
    ) -> None:
        sample = bundle.files.pop(SAMPLE_NAME)
        classifier = make_classifier()
        with pytest.raises(ResourceLoadError):
            classifier.classify_sync()
        assert not classifier.is_loaded

        bundle.files[SAMPLE_NAME] = sample
        assert classifier.classify_sync() == labels[WINNING_INDEX]


class TestClassifyImage:
    async def test_top_k_is_ranked(
        self, make_classifier: Callable[..., ImageClassifier], labels: list[str]
    ) -> None:
        results = await make_classifier().classify_image(gray_png(320, 240), top_k=3)

        assert [r.index for r in results] == [WINNING_INDEX, 0, 1]
        assert results[0].label == labels[WINNING_INDEX]
        confidences = [r.confidence for r in results]
        assert confidences == sorted(confidences, reverse=True)
        assert all(0.0 <= c <= 1.0 for c in confidences)

    async def test_top_k_larger_than_label_count(self, make_classifier: Callable[..., ImageClassifier]) -> None:
        results = await make_classifier().classify_image(gray_png(), top_k=50)
        assert len(results) == NUM_TEST_LABELS
        assert sum(r.confidence for r in results) == pytest.approx(1.0, abs=1e-4)

    async def test_pixel_limit_applies(self, make_classifier: Callable[..., ImageClassifier]) -> None:
        classifier = make_classifier(max_image_pixels=1000)
        with pytest.raises(DecodeError):
            await classifier.classify_image(encode_png(np.zeros((100, 100, 3), dtype=np.uint8)))

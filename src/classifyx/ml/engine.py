"""Inference engine: runs a serialized ONNX model on named input tensors.

The classifier only depends on ``InferenceEngine.run``; tests substitute a
deterministic stub for ``OnnxInferenceEngine``.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Protocol

from onnxruntime import ExecutionMode, GraphOptimizationLevel, InferenceSession, SessionOptions

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

    from classifyx.config import Settings

logger = logging.getLogger(__name__)


class InferenceEngine(Protocol):
    """Protocol for a model runtime: named tensors in, named tensors out."""

    def run(self, inputs: dict[str, NDArray[np.float32]]) -> dict[str, NDArray[np.float32]]:
        """Execute the model.

        Args:
            inputs: Input tensors keyed by model input name.

        Returns:
            Output tensors keyed by model output name.
        """
        ...


EngineFactory = Callable[[bytes], InferenceEngine]


class OnnxInferenceEngine:
    """ONNX Runtime session created from in-memory model bytes."""

    def __init__(self, model: bytes, settings: Settings) -> None:
        self._settings = settings
        self._providers = self._build_providers()
        self._session = InferenceSession(
            model,
            sess_options=self._build_session_options(),
            providers=self._providers,
        )
        logger.info(
            "Created ONNX session (providers=%s, inputs=%s, outputs=%s)",
            self._session.get_providers(),
            self.input_names,
            self.output_names,
        )

    @property
    def input_names(self) -> list[str]:
        return [node.name for node in self._session.get_inputs()]

    @property
    def output_names(self) -> list[str]:
        return [node.name for node in self._session.get_outputs()]

    def run(self, inputs: dict[str, NDArray[np.float32]]) -> dict[str, NDArray[np.float32]]:
        names = self.output_names
        results = self._session.run(names, inputs)
        return dict(zip(names, results, strict=True))

    # -- Internal -----------------------------------------------------------

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts


def onnx_engine_factory(settings: Settings) -> EngineFactory:
    """Return a factory that builds ONNX engines configured by ``settings``."""

    def _factory(model: bytes) -> InferenceEngine:
        return OnnxInferenceEngine(model, settings)

    return _factory

"""Command-line entry point: classify once, or serve the API."""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path

from classifyx.config import get_settings
from classifyx.errors import ClassifyXError
from classifyx.main import LOG_FORMAT, build_classifier

logger = logging.getLogger(__name__)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="classifyx", description="ImageNet classification with ONNX Runtime")
    parser.add_argument("-v", "--verbose", action="store_true", help="log at INFO level")
    commands = parser.add_subparsers(dest="command", required=True)

    classify = commands.add_parser("classify", help="classify the sample image (or --image) and print the label")
    classify.add_argument("--image", type=Path, help="image file to classify instead of the bundled sample")
    classify.add_argument("--top-k", type=int, help="with --image, print this many labels with confidences")

    commands.add_parser("serve", help="run the HTTP API")
    return parser


def _classify_sample() -> list[str]:
    return [build_classifier(get_settings()).classify_sync()]


async def _classify_image(image: Path, top_k: int) -> list[str]:
    classifier = build_classifier(get_settings())
    results = await classifier.classify_image(image.read_bytes(), top_k=top_k)
    if top_k == 1:
        return [results[0].label]
    return [f"{r.confidence:.4f}  {r.label}" for r in results]


def main(argv: list[str] | None = None) -> int:
    parser = _build_parser()
    args = parser.parse_args(argv)
    if args.command == "classify" and args.top_k is not None:
        if args.image is None:
            parser.error("--top-k requires --image")
        if args.top_k < 1:
            parser.error("--top-k must be at least 1")
    logging.basicConfig(level=logging.INFO if args.verbose else logging.WARNING, format=LOG_FORMAT)

    if args.command == "serve":
        import uvicorn

        settings = get_settings()
        uvicorn.run("classifyx.main:app", host=settings.host, port=settings.port)
        return 0

    try:
        if args.image is None:
            lines = _classify_sample()
        else:
            lines = asyncio.run(_classify_image(args.image, args.top_k or 1))
    except (ClassifyXError, OSError) as exc:
        print(f"error: {exc}", file=sys.stderr)
        return 1

    for line in lines:
        print(line)
    return 0


if __name__ == "__main__":
    sys.exit(main())

#!/usr/bin/env python3
"""
Model Download Script
=====================

Fetches the YOLOv8n ONNX export used by the yolo inference backend.

Usage:
    python scripts/download_model.py
    python scripts/download_model.py --output models/yolov8n.onnx --force
"""

import argparse
import logging
import os
import sys

import requests

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from streamwatch_agent.detection.yolo import DEFAULT_MODEL_PATH, MODEL_DOWNLOAD_URL


logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
)
logger = logging.getLogger(__name__)

CHUNK_SIZE = 1024 * 1024


def download(url: str, output: str, timeout: float) -> int:
    """
    Stream a file to disk via a temporary path.

    Returns:
        Number of bytes written
    """
    os.makedirs(os.path.dirname(os.path.abspath(output)), exist_ok=True)
    partial = output + ".part"
    written = 0

    with requests.get(url, stream=True, timeout=timeout) as response:
        response.raise_for_status()
        with open(partial, "wb") as f:
            for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
                f.write(chunk)
                written += len(chunk)

    os.replace(partial, output)
    return written


def main():
    parser = argparse.ArgumentParser(description="Download the YOLOv8n ONNX model")
    parser.add_argument("--url", type=str, default=MODEL_DOWNLOAD_URL, help="Model URL")
    parser.add_argument(
        "--output",
        type=str,
        default=os.environ.get("STREAMWATCH_MODEL_PATH", DEFAULT_MODEL_PATH),
        help=f"Destination path (default: {DEFAULT_MODEL_PATH})",
    )
    parser.add_argument("--timeout", type=float, default=60.0, help="Request timeout")
    parser.add_argument("--force", action="store_true", help="Overwrite an existing file")

    args = parser.parse_args()

    if os.path.exists(args.output) and not args.force:
        logger.info(f"Model already present: {args.output}")
        sys.exit(0)

    logger.info(f"Downloading {args.url} -> {args.output}")
    try:
        size = download(args.url, args.output, args.timeout)
    except requests.RequestException as e:
        logger.error(f"Download failed: {e}")
        sys.exit(1)

    logger.info(f"Saved {size / (1024 * 1024):.1f} MiB to {args.output}")


if __name__ == "__main__":
    main()

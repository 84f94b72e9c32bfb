#!/usr/bin/env python3
"""
Stream Watch Script
===================

Standalone script to run one detection pipeline against a live stream.

This script:
    1. Spawns ffmpeg against the given stream URL
    2. Runs every frame through the chosen inference engine
    3. Logs capture and pipeline stats every report interval
    4. Reports final summary

Messages are written to the log instead of a chat connection, and
the rule set is given on the command line.

Prerequisites:
    - ffmpeg must be on PATH (or pass --ffmpeg)
    - For --backend yolo, the ONNX model must exist (see download_model.py)

Usage:
    python scripts/watch_stream.py https://twitch.tv/somechannel --rule person:0.6
    python scripts/watch_stream.py https://twitch.tv/somechannel --backend mock --duration 60
"""

import argparse
import asyncio
import logging
import os
import sys
import time

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "..", "src"))

from streamwatch_agent.detection import DetectionPipeline, MockInferenceEngine, YoloOnnxEngine
from streamwatch_agent.errors import StreamwatchError
from streamwatch_agent.models import Channel, DetectionConfig, DetectionRule
from streamwatch_agent.notifier import LoggingNotifier
from streamwatch_agent.stores import MemoryStore


# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    datefmt="%Y-%m-%dT%H:%M:%S",
)
logger = logging.getLogger(__name__)


def parse_rule(value: str, rule_id: int) -> DetectionRule:
    """Parse 'class[:min_confidence]' into a rule."""
    object_class, _, confidence = value.partition(":")
    return DetectionRule(
        id=rule_id,
        config_id=1,
        object_class=object_class,
        min_confidence=float(confidence) if confidence else 0.5,
    )


def create_engine(backend: str, model_path: str):
    if backend == "mock":
        return MockInferenceEngine()
    return YoloOnnxEngine(model_path=model_path)


async def run_watch(
    url: str,
    rules: list,
    backend: str,
    model_path: str,
    duration: int,
    interval_ms: int,
    ffmpeg_path: str,
    report_interval: int,
) -> dict:
    """
    Run one pipeline for a fixed duration.

    Returns:
        Final stats dict
    """
    logger.info("=" * 60)
    logger.info("Stream Watch")
    logger.info("=" * 60)
    logger.info(f"Stream URL: {url}")
    logger.info(f"Backend: {backend}")
    logger.info(f"Rules: {', '.join(r.object_class for r in rules) or '(none)'}")
    logger.info(f"Frame interval: {interval_ms} ms")
    logger.info(f"Duration: {duration} seconds")
    logger.info("=" * 60)

    store = MemoryStore()
    channel = store.add_channel(Channel(id=1, username="cli"))
    config = store.add_config(
        DetectionConfig(
            id=1,
            channel_id=channel.id,
            stream_url=url,
            frame_interval_ms=interval_ms,
            is_enabled=True,
        )
    )
    for rule in rules:
        store.add_rule(rule)

    engine = create_engine(backend, model_path)
    await engine.initialize()

    notifier = LoggingNotifier()
    pipeline = DetectionPipeline(
        config,
        channel,
        engine,
        notifier,
        store,
        capture_options={"ffmpeg_path": ffmpeg_path},
    )
    pipeline.on_error(lambda error: logger.error(f"Pipeline error: {error}"))

    start_time = time.time()
    try:
        await pipeline.start()

        last_report_time = start_time
        while True:
            elapsed = time.time() - start_time
            if elapsed >= duration:
                logger.info(f"Watch duration ({duration}s) reached")
                break

            if time.time() - last_report_time >= report_interval:
                stats = pipeline.get_stats()
                capture = pipeline.capture

                logger.info("-" * 40)
                logger.info(f"Progress Report (elapsed: {elapsed:.0f}s)")
                logger.info(f"  Capture: {capture.get_status().value if capture else 'n/a'}")
                logger.info(f"  Frames processed: {stats['frames_processed']}")
                logger.info(f"  Frames dropped: {stats['frames_dropped']}")
                logger.info(f"  Detections: {stats['detections_total']}")
                logger.info(f"  Messages sent: {stats['messages_sent']}")
                if capture is not None:
                    logger.info(f"  Reconnects: {capture.metrics.reconnect_count}")

                last_report_time = time.time()

            await asyncio.sleep(0.5)

    except StreamwatchError as e:
        logger.error(f"Watch failed: {e}")
    finally:
        await pipeline.stop()
        engine.dispose()

    total_time = time.time() - start_time
    stats = pipeline.get_stats()

    logger.info("=" * 60)
    logger.info("FINAL SUMMARY")
    logger.info("=" * 60)
    logger.info(f"Total runtime: {total_time:.1f} seconds")
    logger.info(f"Frames processed: {stats['frames_processed']}")
    logger.info(f"Detections: {stats['detections_total']}")
    logger.info(f"Messages sent: {stats['messages_sent']}")
    logger.info(f"Processing errors: {stats['processing_errors']}")
    for entry in notifier.recent():
        logger.info(f"  {entry['channel']}: {entry['message']}")
    logger.info("=" * 60)

    return {
        "duration": total_time,
        "frames_processed": stats["frames_processed"],
        "messages_sent": stats["messages_sent"],
    }


def main():
    parser = argparse.ArgumentParser(
        description="Run object detection against one live stream"
    )
    parser.add_argument("url", type=str, help="Stream URL (e.g. https://twitch.tv/name)")
    parser.add_argument(
        "--rule",
        action="append",
        default=[],
        help="Notify on class[:min_confidence] (repeatable, e.g. person:0.6)",
    )
    parser.add_argument(
        "--backend",
        choices=["yolo", "mock"],
        default="yolo",
        help="Inference backend (default: yolo)",
    )
    parser.add_argument(
        "--model",
        type=str,
        default=os.environ.get("STREAMWATCH_MODEL_PATH", "models/yolov8n.onnx"),
        help="ONNX model path for the yolo backend",
    )
    parser.add_argument(
        "--duration",
        type=int,
        default=120,
        help="Watch duration in seconds (default: 120)",
    )
    parser.add_argument(
        "--interval-ms",
        type=int,
        default=1000,
        help="Milliseconds between captured frames (default: 1000)",
    )
    parser.add_argument(
        "--ffmpeg",
        type=str,
        default=os.environ.get("STREAMWATCH_FFMPEG_PATH", "ffmpeg"),
        help="ffmpeg executable (default: ffmpeg)",
    )
    parser.add_argument(
        "--report-interval",
        type=int,
        default=10,
        help="Seconds between progress reports (default: 10)",
    )

    args = parser.parse_args()
    rules = [parse_rule(value, i + 1) for i, value in enumerate(args.rule)]

    result = asyncio.run(run_watch(
        url=args.url,
        rules=rules,
        backend=args.backend,
        model_path=args.model,
        duration=args.duration,
        interval_ms=args.interval_ms,
        ffmpeg_path=args.ffmpeg,
        report_interval=args.report_interval,
    ))

    sys.exit(0 if result["frames_processed"] > 0 else 1)


if __name__ == "__main__":
    main()

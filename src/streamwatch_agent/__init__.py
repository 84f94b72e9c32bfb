"""
Streamwatch Agent
=================

Live stream object detection with chat notifications.

This package watches many live streams at once. Each monitored channel
gets an ffmpeg frame capture, frames are run through a shared object
detector, and configured classes trigger a templated chat message,
subject to a per-class cooldown.

Components:
    - stream: ffmpeg frame capture, JPEG demuxing, buffering, backoff
    - detection: inference engines, rule cache, message templates, pipeline
    - liveness: Twitch stream status checks
    - stores: channel/config/rule persistence (SQLite, in-memory)
    - orchestrator: multi-channel supervisor with pending/paused states

Example:
    from streamwatch_agent.config import settings
    from streamwatch_agent.main import build_orchestrator

    orchestrator = build_orchestrator(settings)
    await orchestrator.initialize()

    # Agent is normally started via the FastAPI application
    # See main.py for entry point
"""

__version__ = "0.1.0"
__author__ = "Streamwatch Project"

__all__ = [
    "__version__",
]

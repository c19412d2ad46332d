"""Clip and live-recording orchestration around yt-dlp and ffmpeg."""

__all__ = ["__version__"]
__version__ = "0.1.0"

"""
Multipublish Compressor
=======================
Best-effort target-size compression with ffmpeg, run before the media is
staged. Output is H.264 + AAC at 720p with +faststart so platforms can begin
processing before the whole file arrives.

Bitrate = target_mb * 8 * 1024 / duration kbps. When ffprobe cannot report a
duration, a 3 minute clip is assumed (the longest Reel/Short we accept).
"""

import asyncio
import json
import logging
import tempfile
from pathlib import Path
from typing import List, Optional, Tuple

from .errors import ErrorCode, PublishError

logger = logging.getLogger("multipublish.transcode")

FFMPEG_PATH = "ffmpeg"
FFPROBE_PATH = "ffprobe"

ASSUMED_DURATION_SECONDS = 180
AUDIO_BITRATE = "128k"
MIN_VIDEO_KBPS = 300


def target_video_kbps(target_mb: float, duration_seconds: Optional[float]) -> int:
    duration = duration_seconds if duration_seconds and duration_seconds > 0 else ASSUMED_DURATION_SECONDS
    return max(int(target_mb * 8 * 1024 / duration), MIN_VIDEO_KBPS)


def compressed_name(filename: str) -> str:
    stem = Path(filename).stem or "video"
    return f"{stem}_compressed.mp4"


def build_compress_command(input_path: Path, output_path: Path, filename: str,
                           video_kbps: int, ffmpeg_path: str = FFMPEG_PATH) -> List[str]:
    """ffmpeg argv. QuickTime sources get constant-quality encoding at 30fps instead of a bitrate cap."""
    cmd = [ffmpeg_path, "-y", "-i", str(input_path), "-c:v", "libx264", "-preset", "ultrafast"]
    if filename.lower().endswith(".mov"):
        cmd += ["-crf", "28", "-vf", "scale=-2:720", "-r", "30"]
    else:
        cmd += [
            "-b:v", f"{video_kbps}k",
            "-maxrate", f"{int(video_kbps * 1.5)}k",
            "-bufsize", f"{video_kbps * 2}k",
            "-vf", "scale=-2:720",
        ]
    cmd += ["-c:a", "aac", "-b:a", AUDIO_BITRATE, "-movflags", "+faststart", str(output_path)]
    return cmd


async def probe_duration(video_path: Path, ffprobe_path: str = FFPROBE_PATH) -> Optional[float]:
    """Duration in seconds, or None when ffprobe is missing or fails."""
    cmd = [ffprobe_path, "-v", "quiet", "-print_format", "json", "-show_format", str(video_path)]
    try:
        proc = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, _ = await proc.communicate()
    except OSError as e:
        logger.warning(f"ffprobe unavailable: {e}")
        return None

    if proc.returncode != 0:
        return None
    try:
        duration = float(json.loads(stdout.decode()).get("format", {}).get("duration", 0))
    except (ValueError, TypeError):
        return None
    return duration or None


async def compress_video(data: bytes, filename: str, target_mb: float,
                         ffmpeg_path: str = FFMPEG_PATH) -> Tuple[bytes, str]:
    """
    Compress ``data`` towards ``target_mb``.

    Returns (data, filename) unchanged when the source is already small enough.

    Raises:
        PublishError(TRANSCODE_FAILED): ffmpeg missing or failed.
    """
    size_mb = len(data) / (1024 * 1024)
    if size_mb <= target_mb:
        logger.info(f"Compression skipped: {size_mb:.2f} MB <= target {target_mb} MB")
        return data, filename

    with tempfile.TemporaryDirectory(prefix="multipublish-") as tmp:
        input_path = Path(tmp) / f"input{Path(filename).suffix or '.mp4'}"
        output_path = Path(tmp) / "output.mp4"
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(None, input_path.write_bytes, data)

        duration = await probe_duration(input_path)
        video_kbps = target_video_kbps(target_mb, duration)
        cmd = build_compress_command(input_path, output_path, filename, video_kbps, ffmpeg_path)
        logger.info(f"Compressing {filename}: {size_mb:.2f} MB -> ~{target_mb} MB at {video_kbps}k")

        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            _, stderr = await proc.communicate()
        except OSError as e:
            raise PublishError(ErrorCode.TRANSCODE_FAILED, f"ffmpeg unavailable: {e}")

        if proc.returncode != 0 or not output_path.exists():
            logger.error(f"Compression failed: {stderr.decode(errors='replace')[-500:]}")
            raise PublishError(ErrorCode.TRANSCODE_FAILED, "FFmpeg compression failed")

        out = await loop.run_in_executor(None, output_path.read_bytes)

    logger.info(f"Compressed {filename}: {size_mb:.2f} MB -> {len(out) / (1024 * 1024):.2f} MB")
    return out, compressed_name(filename)

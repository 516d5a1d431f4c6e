"""
Builds the ffmpeg relay command as a plain list[str].

Keeping command construction separate from the supervisor means the exact
command can be logged before it runs and flag generation can be tested
without spawning anything.
"""

import tempfile
from pathlib import Path
from typing import Optional

from streamflow.models.job import Job

AUDIO_BITRATE = "128k"
AUDIO_SAMPLE_RATE = "44100"


def _concat_entry(path: Path) -> str:
    quoted = str(path.resolve()).replace("'", "'\\''")
    return f"file '{quoted}'"


def write_concat_list(paths: list[Path], directory: Optional[str] = None) -> Path:
    """
    Write an ffmpeg concat demuxer list for a playlist.

    The caller owns the returned file and must delete it once the encoder
    has exited.
    """
    with tempfile.NamedTemporaryFile(
        "w", suffix=".txt", prefix="playlist-", dir=directory, delete=False, encoding="utf-8"
    ) as handle:
        handle.write("\n".join(_concat_entry(path) for path in paths))
        handle.write("\n")
    return Path(handle.name)


def build_relay_command(
    job: Job,
    input_path: Path,
    ffmpeg_path: str = "ffmpeg",
    concat: bool = False,
) -> list[str]:
    """
    Build the full ffmpeg command that pushes one job's media to its destination.

    The structure is:
        ffmpeg -re [-stream_loop -1] [-f concat -safe 0] -i <input>
          <video encode flags> <audio encode flags> -f flv <url>/<key>

    ``-re`` paces reading at native frame rate, which a live ingest expects.
    """
    params = job.encode
    width, height = params.frame_size()
    bitrate = params.bitrate_kbps

    command = [ffmpeg_path, "-hide_banner", "-loglevel", "error", "-nostdin", "-re"]
    if params.loop:
        command += ["-stream_loop", "-1"]
    if concat:
        command += ["-f", "concat", "-safe", "0"]
    command += ["-i", str(input_path)]

    command += [
        "-c:v", "libx264",
        "-preset", "veryfast",
        "-tune", "zerolatency",
        "-b:v", f"{bitrate}k",
        "-maxrate", f"{bitrate}k",
        "-bufsize", f"{bitrate * 2}k",
        "-pix_fmt", "yuv420p",
        "-r", str(params.fps),
        "-g", str(params.fps * 2),
        "-vf",
        (
            f"scale={width}:{height}:force_original_aspect_ratio=decrease,"
            f"pad={width}:{height}:(ow-iw)/2:(oh-ih)/2"
        ),
        "-c:a", "aac",
        "-b:a", AUDIO_BITRATE,
        "-ar", AUDIO_SAMPLE_RATE,
        "-f", "flv",
        job.destination.target,
    ]
    return command


def command_as_string(cmd: list[str], secret: Optional[str] = None) -> str:
    """Human-readable version of the command for logging, with the stream key masked."""
    text = " ".join(cmd)
    if secret:
        text = text.replace(secret, "****")
    return text

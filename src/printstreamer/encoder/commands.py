"""
Encoder Argument Builders
=========================

Pure functions producing argument vectors for each pipeline stage.

The strings here are configuration, not contract: they only need to keep
stdin as the single write path, stderr as the diagnostics channel and
stdout (or an RTMP URL) as the output.
"""

from typing import List, Optional

from printstreamer.config import OverlayConfig


BASE_FLAGS = ["-hide_banner", "-nostats", "-loglevel", "error", "-nostdin"]

HTTP_INPUT_FLAGS = [
    "-reconnect", "1",
    "-reconnect_streamed", "1",
    "-reconnect_delay_max", "2",
    "-fflags", "+genpts+discardcorrupt",
]


def escape_filter_value(value: str) -> str:
    """Escape backslashes and single quotes for a filtergraph value."""
    return (value or "").replace("\\", "\\\\").replace("'", "\\'")


def _input(source: str, mjpeg: bool = False) -> List[str]:
    args: List[str] = []
    if source.lower().startswith("http"):
        args += HTTP_INPUT_FLAGS
        args += ["-analyzeduration", "5M", "-probesize", "10M"]
        if mjpeg:
            args += ["-f", "mjpeg", "-use_wallclock_as_timestamps", "1"]
    return args + ["-i", source]


def overlay_filter(overlay: OverlayConfig, text_file: str) -> str:
    """Build the drawbox + drawtext filter chain for the overlay stage."""
    x = (overlay.x or "0").replace(" ", "")
    y = (overlay.y or "h").replace(" ", "")
    filters = ["format=yuv420p"]
    if overlay.box:
        box_y = y if overlay.y else f"ih-{overlay.box_height}"
        filters.append(
            f"drawbox=x={x}:y={box_y}:w=iw:h={overlay.box_height}"
            f":color={overlay.box_color}:t=fill"
        )
    text_x = x if overlay.x else str(overlay.box_border_w)
    text_y = y if overlay.y else f"h-{overlay.box_height}+{overlay.box_border_w}"
    filters.append(
        f"drawtext=fontfile='{escape_filter_value(overlay.font_file)}'"
        f":textfile='{escape_filter_value(text_file)}':reload=1:expansion=normal"
        f":fontsize={overlay.font_size}:fontcolor={overlay.font_color}"
        f":x={text_x}:y={text_y}"
    )
    return ",".join(filters)


def overlay_mjpeg_args(source: str, overlay: OverlayConfig, text_file: str) -> List[str]:
    """Stage 2: camera MJPEG in, MJPEG with rendered text out on stdout."""
    return (
        BASE_FLAGS
        + ["-fflags", "nobuffer"]
        + _input(source, mjpeg=True)
        + ["-vf", overlay_filter(overlay, text_file), "-an"]
        + ["-c:v", "mjpeg", "-huffman", "optimal", "-q:v", str(overlay.quality)]
        + ["-f", "mpjpeg", "-boundary_tag", "frame", "pipe:1"]
    )


def mix_args(
    video_url: str,
    audio_url: Optional[str],
    bitrate_kbps: int = 2500,
    fps: int = 30,
) -> List[str]:
    """Stage 4: overlay video plus audio into fragmented MP4 on stdout."""
    args = BASE_FLAGS + ["-fflags", "nobuffer"] + _input(video_url, mjpeg=True)
    if audio_url:
        args += _input(audio_url)
    args += [
        "-c:v", "libx264",
        "-preset", "ultrafast",
        "-b:v", f"{bitrate_kbps}k",
        "-maxrate", f"{int(bitrate_kbps * 1.2)}k",
        "-bufsize", f"{bitrate_kbps * 2}k",
        "-pix_fmt", "yuv420p",
        "-r", str(fps),
        "-g", str(max(2, fps * 2)),
    ]
    if audio_url:
        args += ["-map", "0:v:0", "-map", "1:a:0", "-c:a", "aac", "-b:a", "128k", "-ar", "44100", "-ac", "2"]
    else:
        args += ["-an"]
    return args + ["-f", "mp4", "-movflags", "+frag_keyframe+empty_moov", "pipe:1"]


def audio_track_args(track_path: str, bitrate: str = "192k") -> List[str]:
    """Stage 3: one track decoded in real time and re-encoded as MP3."""
    return BASE_FLAGS + ["-re", "-i", track_path, "-vn", "-f", "mp3", "-b:a", bitrate, "-"]


def silence_args(bitrate: str = "192k") -> List[str]:
    """Endless silent MP3, used while music is disabled."""
    return BASE_FLAGS + [
        "-re",
        "-f", "lavfi",
        "-i", "anullsrc=channel_layout=stereo:sample_rate=44100",
        "-f", "mp3",
        "-b:a", bitrate,
        "-",
    ]


def rtmp_publish_args(rtmp_url: str) -> List[str]:
    """Ingestion bridge: fragmented MP4 from the mix stage on stdin, remuxed to FLV/RTMP."""
    return BASE_FLAGS + [
        "-fflags", "+genpts",
        "-f", "mp4",
        "-i", "pipe:0",
        "-map", "0",
        "-c", "copy",
        "-flvflags", "no_duration_filesize",
        "-f", "flv",
        rtmp_url,
    ]


def timelapse_args(
    frame_pattern: str,
    output_path: str,
    frame_rate: int = 30,
    hold_seconds: float = 0.0,
) -> List[str]:
    """Assemble numbered frames into an MP4."""
    args = [
        "-hide_banner", "-loglevel", "error", "-y",
        "-framerate", str(frame_rate),
        "-start_number", "0",
        "-i", frame_pattern,
    ]
    if hold_seconds > 0:
        args += ["-vf", f"tpad=stop_mode=clone:stop_duration={hold_seconds:g}"]
    return args + [
        "-c:v", "libx264",
        "-preset", "medium",
        "-crf", "18",
        "-pix_fmt", "yuv420p",
        "-movflags", "+faststart",
        output_path,
    ]


def single_frame_args(source: str) -> List[str]:
    """Grab one decoded frame from any stream as JPEG on stdout."""
    return BASE_FLAGS + _input(source) + [
        "-frames:v", "1",
        "-f", "image2pipe",
        "-c:v", "mjpeg",
        "pipe:1",
    ]

"""
FFmpeg command lines.

Builds argv lists for the three encoders the agent runs: the persistent
MP3 audio encoder, the camera streamer and the time-lapse assembler.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional

BASE_ARGS = ["-hide_banner", "-nostats", "-loglevel", "error", "-nostdin"]

RECONNECT_ARGS = [
    "-reconnect", "1",
    "-reconnect_streamed", "1",
    "-reconnect_delay_max", "2",
]


class StreamTarget(str, Enum):
    """Where the video streamer sends its output."""
    RTMP = "rtmp"
    LOCAL_PREVIEW = "local_preview"
    BOTH = "both"


@dataclass
class OverlaySettings:
    """Text overlay drawn onto the video."""
    text_file: str
    font_file: str
    font_size: int = 16
    draw_box: bool = True


@dataclass
class VideoStreamSettings:
    """Inputs and outputs of one video streamer run."""
    source_url: str
    audio_url: Optional[str] = None
    fps: int = 30
    bitrate_kbps: int = 2500
    width: int = 640
    height: int = 480
    overlay: Optional[OverlaySettings] = None
    rtmp_url: Optional[str] = None
    preview_url: Optional[str] = None

    @property
    def target(self) -> StreamTarget:
        if self.rtmp_url and self.preview_url:
            return StreamTarget.BOTH
        if self.rtmp_url:
            return StreamTarget.RTMP
        if self.preview_url:
            return StreamTarget.LOCAL_PREVIEW
        raise ValueError("Video streamer needs an RTMP or local preview destination")


def build_rtmp_url(ingestion_address: str, stream_key: str) -> str:
    """Join an ingestion address and stream key."""
    return f"{ingestion_address.rstrip('/')}/{stream_key}"


def build_audio_encoder_args(
    feed_url: str,
    bitrate: str = "192k",
    ffmpeg_path: str = "ffmpeg",
) -> list[str]:
    """Encoder that reads the local feed at native rate and writes MP3 to stdout."""
    return [
        ffmpeg_path,
        *BASE_ARGS,
        "-re",
        *RECONNECT_ARGS,
        "-i", feed_url,
        "-vn",
        "-f", "mp3",
        "-b:a", bitrate,
        "-",
    ]


def _video_filter(settings: VideoStreamSettings) -> str:
    filters = ["format=yuv420p", f"scale={settings.width}:{settings.height}"]
    overlay = settings.overlay
    if overlay is not None:
        if overlay.draw_box:
            filters.append("drawbox=x=0:y=ih-40:w=iw:h=40:color=black@0.5:t=fill")
        filters.append(
            f"drawtext=fontfile={overlay.font_file}:textfile={overlay.text_file}:reload=1"
            f":fontsize={overlay.font_size}:fontcolor=white:x=10:y=h-30"
        )
    return ",".join(filters)


def _preview_format(preview_url: str) -> list[str]:
    if preview_url.endswith(".m3u8"):
        return ["hls", "hls_time=2", "hls_list_size=6", "hls_flags=delete_segments"]
    if preview_url.startswith("rtmp://"):
        return ["flv"]
    return ["mpegts"]


def _output_args(settings: VideoStreamSettings) -> list[str]:
    target = settings.target
    if target == StreamTarget.RTMP:
        return ["-flvflags", "no_duration_filesize", "-f", "flv", settings.rtmp_url]

    preview_fmt = _preview_format(settings.preview_url)
    if target == StreamTarget.LOCAL_PREVIEW:
        fmt, *options = preview_fmt
        args = ["-f", fmt]
        for option in options:
            key, _, value = option.partition("=")
            args += [f"-{key}", value]
        return args + [settings.preview_url]

    preview_spec = ":".join([f"f={preview_fmt[0]}", *preview_fmt[1:]])
    tee = (
        f"[f=flv:flvflags=no_duration_filesize:onfail=ignore]{settings.rtmp_url}"
        f"|[{preview_spec}:onfail=ignore]{settings.preview_url}"
    )
    return ["-f", "tee", tee]


def build_video_streamer_args(
    settings: VideoStreamSettings,
    ffmpeg_path: str = "ffmpeg",
) -> list[str]:
    """
    Camera streamer command.

    MJPEG video in, optional HTTP audio in (silence when absent), H.264 and
    AAC out to RTMP, a local preview, or both through the tee muxer.
    """
    args = [ffmpeg_path, *BASE_ARGS, "-err_detect", "ignore_err"]

    args += [
        *RECONNECT_ARGS,
        "-fflags", "+genpts",
        "-f", "mjpeg",
        "-use_wallclock_as_timestamps", "1",
        "-i", settings.source_url,
    ]

    if settings.audio_url:
        args += [*RECONNECT_ARGS, "-i", settings.audio_url]
    else:
        args += ["-f", "lavfi", "-i", "anullsrc=channel_layout=stereo:sample_rate=44100"]

    args += ["-map", "0:v:0", "-map", "1:a:0"]
    args += ["-vf", _video_filter(settings)]

    bitrate = f"{settings.bitrate_kbps}k"
    args += [
        "-c:v", "libx264",
        "-preset", "veryfast",
        "-tune", "zerolatency",
        "-profile:v", "baseline",
        "-r", str(settings.fps),
        "-g", str(settings.fps * 2),
        "-b:v", bitrate,
        "-maxrate", bitrate,
        "-bufsize", f"{settings.bitrate_kbps * 2}k",
        "-c:a", "aac",
        "-b:a", "128k",
        "-ar", "44100",
        "-ac", "2",
    ]
    args += _output_args(settings)
    return args


def build_timelapse_args(
    frames_dir: str,
    output_path: str,
    fps: int = 30,
    ffmpeg_path: str = "ffmpeg",
) -> list[str]:
    """Assemble numbered JPEG frames into an MP4, holding the last frame for 7 seconds."""
    return [
        ffmpeg_path,
        "-hide_banner",
        "-loglevel", "error",
        "-nostdin",
        "-y",
        "-framerate", str(fps),
        "-start_number", "0",
        "-i", f"{frames_dir}/frame_%06d.jpg",
        "-vf", "tpad=stop_mode=clone:stop_duration=7",
        "-c:v", "libx264",
        "-preset", "medium",
        "-crf", "23",
        "-pix_fmt", "yuv420p",
        "-movflags", "+faststart",
        output_path,
    ]

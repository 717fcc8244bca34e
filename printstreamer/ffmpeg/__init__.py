"""
PrintStreamer FFmpeg Module

- EncoderProcess: one supervised FFmpeg child with exit reporting
- commands: argv builders for the audio encoder, video streamer and
  time-lapse assembler
"""

from printstreamer.ffmpeg.commands import (
    OverlaySettings,
    StreamTarget,
    VideoStreamSettings,
    build_audio_encoder_args,
    build_rtmp_url,
    build_timelapse_args,
    build_video_streamer_args,
)
from printstreamer.ffmpeg.process import (
    EncoderProcess,
    ExitReason,
    ProcessExit,
    ProcessState,
)

__all__ = [
    "EncoderProcess",
    "ExitReason",
    "ProcessExit",
    "ProcessState",
    "OverlaySettings",
    "StreamTarget",
    "VideoStreamSettings",
    "build_audio_encoder_args",
    "build_rtmp_url",
    "build_timelapse_args",
    "build_video_streamer_args",
]

from __future__ import annotations

import shutil
import subprocess
import tempfile
from pathlib import Path
from typing import Final

from tornado.log import gen_log

from ChatlogAccess.errors import TranscodeError

SILK_MAGIC: Final = b"#!SILK_V3"
# the client puts one extra byte in front of the standard silk header
CLIENT_PREFIX: Final = b"\x02"


def strip_client_prefix(data: bytes) -> bytes:
    if data.startswith(CLIENT_PREFIX + SILK_MAGIC):
        return data[len(CLIENT_PREFIX) :]
    return data


class SilkTranscoder:
    """voice transcoder that turns silk v3 voice messages into mp3s.

    there's no silk decoder in ffmpeg, so this takes two steps: the reference
    `silk_v3_decoder` program decodes the payload into raw 16-bit mono pcm, and then
    ffmpeg encodes that pcm as mp3 and writes it to stdout.

    Attributes:
        decoder: name or path of the silk_v3_decoder executable.
        ffmpeg: name or path of the ffmpeg executable.
        sample_rate: sample rate the pcm is decoded at.
        bitrate: mp3 bitrate passed on to ffmpeg.
    """

    def __init__(
        self,
        decoder: str = "silk_v3_decoder",
        ffmpeg: str = "ffmpeg",
        sample_rate: int = 24000,
        bitrate: str = "64k",
    ):
        self.decoder = decoder
        self.ffmpeg = ffmpeg
        self.sample_rate = sample_rate
        self.bitrate = bitrate

    def transcode(self, data: bytes) -> bytes:
        data = strip_client_prefix(data)
        if not data.startswith(SILK_MAGIC):
            raise TranscodeError("not a silk v3 payload")

        decoder = shutil.which(self.decoder)
        ffmpeg = shutil.which(self.ffmpeg)
        if not decoder or not ffmpeg:
            raise TranscodeError(
                f"{self.decoder if not decoder else self.ffmpeg} is not installed"
            )

        with tempfile.TemporaryDirectory() as temp_dir:
            silk_path = Path(temp_dir) / "voice.silk"
            pcm_path = Path(temp_dir) / "voice.pcm"
            silk_path.write_bytes(data)
            try:
                subprocess.run(
                    [
                        decoder,
                        str(silk_path),
                        str(pcm_path),
                        "-Fs_API",
                        str(self.sample_rate),
                        "-quiet",
                    ],
                    check=True,
                    capture_output=True,
                )
                result = subprocess.run(
                    [
                        ffmpeg,
                        "-y",
                        "-f",
                        "s16le",
                        "-ar",
                        str(self.sample_rate),
                        "-ac",
                        "1",
                        "-i",
                        str(pcm_path),
                        "-c:a",
                        "libmp3lame",
                        "-b:a",
                        self.bitrate,
                        "-f",
                        "mp3",
                        "pipe:1",
                    ],
                    check=True,
                    capture_output=True,
                )
            except subprocess.CalledProcessError as e:
                gen_log.debug("voice transcoding stderr: %s", e.stderr)
                raise TranscodeError(
                    f"{Path(e.cmd[0]).name} exited with {e.returncode}", e
                )
            except OSError as e:
                raise TranscodeError("could not run transcoder", e)

        if not result.stdout:
            raise TranscodeError("transcoder produced no audio")
        return result.stdout

"""Video codec backed by the ffmpeg and ffprobe binaries.

Sources and outputs live in temporary files for the duration of one call;
frames travel as raw RGB24 over the decoder's stdout and the encoder's stdin.
"""
import asyncio
import json
import logging
import os
import subprocess
import tempfile
from fractions import Fraction
from pathlib import Path
from typing import Any, Optional

from converter.config import DEFAULT_FPS, FFMPEG_BIN, FFPROBE_BIN, THUMBNAIL_QSCALE, VIDEO_AUDIO_BITRATE
from converter.conversion.codec import Surface, VideoMetadata
from converter.conversion.models import SourceInfo
from converter.errors import DecodeError, EncodeError, UnsupportedFormatError

logger = logging.getLogger("converter.ffmpeg")

# Output MIME type -> ffmpeg encoders that can produce it, in preference order
_MIME_ENCODERS = {
    "video/webm;codecs=vp8": ["libvpx"],
    "video/webm;codecs=vp9": ["libvpx-vp9"],
    "video/webm": ["libvpx-vp9", "libvpx", "libaom-av1", "libsvtav1"],
}
# Seconds of frames probed for the frame clock beyond the sampling window
_CLOCK_PROBE_SECONDS = 1.5


def parse_time_value(raw: Any) -> Optional[float]:
    """Parse ffprobe time/rate values: numbers, "12.5", "30000/1001"."""
    if raw is None:
        return None
    if isinstance(raw, (int, float)):
        return float(raw)
    if isinstance(raw, str):
        value = raw.strip()
        if not value or value == "N/A":
            return None
        try:
            return float(value)
        except ValueError:
            if "/" in value:
                try:
                    return float(Fraction(value))
                except (ValueError, ZeroDivisionError):
                    return None
    return None


def parse_encoders(output: str) -> set[str]:
    """Encoder names from ``ffmpeg -encoders`` output (lines like " V....D libvpx  libvpx VP8")."""
    names = set()
    for line in output.splitlines():
        parts = line.split()
        if len(parts) >= 2 and len(parts[0]) == 6 and parts[0][0] in "VAS" and parts[1] != "=":
            names.add(parts[1])
    return names


def parse_probe(data: dict) -> VideoMetadata:
    streams = data.get("streams") or []
    video = next((s for s in streams if s.get("codec_type") == "video"), None)
    has_audio = any(s.get("codec_type") == "audio" for s in streams)
    if video is None:
        return VideoMetadata(width=0, height=0, duration=0.0, has_audio=has_audio)
    duration = parse_time_value((data.get("format") or {}).get("duration"))
    if duration is None:
        duration = parse_time_value(video.get("duration")) or 0.0
    rate = parse_time_value(video.get("avg_frame_rate")) or parse_time_value(video.get("r_frame_rate"))
    return VideoMetadata(
        width=int(video.get("width") or 0),
        height=int(video.get("height") or 0),
        duration=duration,
        frame_rate=rate or None,
        has_audio=has_audio,
    )


def _write_temp(data: bytes, suffix: str) -> Path:
    fd, path = tempfile.mkstemp(prefix="converter-", suffix=suffix)
    with os.fdopen(fd, "wb") as f:
        f.write(data)
    return Path(path)


def _remove(path: Optional[Path]) -> None:
    if path is None:
        return
    try:
        path.unlink(missing_ok=True)
    except OSError as e:
        logger.warning("Could not remove %s: %s", path, e)


async def _spawn(cmd: list[str], **kwargs) -> asyncio.subprocess.Process:
    try:
        return await asyncio.create_subprocess_exec(*cmd, **kwargs)
    except FileNotFoundError as e:
        logger.error("%s not found. Install ffmpeg for video conversion.", cmd[0])
        raise UnsupportedFormatError(f"{cmd[0]} not installed. Install ffmpeg for video conversion.") from e


async def _run(cmd: list[str]) -> bytes:
    proc = await _spawn(cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.PIPE)
    stdout, stderr = await proc.communicate()
    if proc.returncode != 0:
        raise subprocess.CalledProcessError(proc.returncode, cmd, stdout, stderr)
    return stdout


def _stderr_text(exc: subprocess.CalledProcessError) -> str:
    raw = exc.stderr or b""
    return raw.decode("utf-8", "replace").strip() or f"exit code {exc.returncode}"


class ProbedFrameClock:
    """Frame clock over presentation timestamps read from the container with ffprobe."""

    def __init__(self, codec: "FFmpegVideoCodec", path: Path, start: float):
        self._codec = codec
        self._path = path
        self._start = start
        self._timestamps: Optional[list[float]] = None

    async def next_frame(self) -> float:
        if self._timestamps is None:
            self._timestamps = await self._codec.frame_timestamps(self._path, self._start, _CLOCK_PROBE_SECONDS)
        if not self._timestamps:
            raise DecodeError("No more frame timestamps")
        return self._timestamps.pop(0)


class FFmpegFrameSource:
    """Decoded frames of one source, scaled to the target size by ffmpeg."""

    def __init__(self, codec: "FFmpegVideoCodec", path: Path, metadata: VideoMetadata, width: int, height: int):
        self.codec = codec
        self.path = path
        self.width = width
        self.height = height
        self.duration = metadata.duration
        self.has_audio = metadata.has_audio
        self.rate = metadata.frame_rate or DEFAULT_FPS
        self.current_time = 0.0
        self.ended = False
        self._start = 0.0
        self._index = 0
        self._frame: Optional[bytes] = None
        self._proc: Optional[asyncio.subprocess.Process] = None

    @property
    def frame_size(self) -> int:
        return self.width * self.height * 3

    def frame_clock(self) -> ProbedFrameClock:
        return ProbedFrameClock(self.codec, self.path, self.current_time)

    async def seek(self, seconds: float) -> None:
        await self._stop_decoder()
        self._start = max(0.0, seconds)
        self._index = 0
        self.current_time = self._start
        self.ended = False
        cmd = [
            self.codec.ffmpeg, "-v", "error", "-nostdin",
            "-ss", f"{self._start:.3f}", "-i", str(self.path),
            "-an", "-vf", f"scale={self.width}:{self.height}",
            "-f", "rawvideo", "-pix_fmt", "rgb24", "pipe:1",
        ]
        self._proc = await _spawn(cmd, stdout=asyncio.subprocess.PIPE, stderr=asyncio.subprocess.DEVNULL)
        await self._read_frame()

    async def advance(self) -> None:
        if self.ended:
            return
        self._index += 1
        self.current_time = self._start + self._index / self.rate
        await self._read_frame()

    def draw(self, surface: Surface) -> None:
        if self._frame is None:
            raise DecodeError("No decoded frame available")
        if surface.frame_size != len(self._frame):
            raise DecodeError(f"Frame size {len(self._frame)} does not match surface size {surface.frame_size}")
        surface.data[:] = self._frame

    async def close(self) -> None:
        await self._stop_decoder()
        _remove(self.path)

    async def _read_frame(self) -> None:
        assert self._proc is not None and self._proc.stdout is not None
        try:
            self._frame = await self._proc.stdout.readexactly(self.frame_size)
        except asyncio.IncompleteReadError:
            self._frame = None
            self.ended = True

    async def _stop_decoder(self) -> None:
        proc, self._proc = self._proc, None
        if proc is None:
            return
        if proc.returncode is None:
            proc.kill()
        await proc.wait()


class FFmpegEncoder:
    """Raw RGB frames in on stdin, a WebM file out."""

    def __init__(self, proc: asyncio.subprocess.Process, out_path: Path):
        self._proc = proc
        self._out_path = out_path
        self._stderr = b""
        self._stderr_task = asyncio.ensure_future(self._collect_stderr())

    async def _collect_stderr(self) -> None:
        if self._proc.stderr is not None:
            self._stderr = await self._proc.stderr.read()

    def _error_text(self) -> str:
        return self._stderr.decode("utf-8", "replace").strip() or f"exit code {self._proc.returncode}"

    async def write(self, surface: Surface) -> None:
        assert self._proc.stdin is not None
        try:
            self._proc.stdin.write(bytes(surface.data))
            await self._proc.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            await self._proc.wait()
            await self._stderr_task
            raise EncodeError(f"Encoder error: {self._error_text()}") from e

    async def finalize(self) -> bytes:
        try:
            assert self._proc.stdin is not None
            self._proc.stdin.close()
            await self._proc.wait()
            await self._stderr_task
            if self._proc.returncode != 0:
                raise EncodeError(f"Encoder error: {self._error_text()}")
            return self._out_path.read_bytes()
        finally:
            _remove(self._out_path)

    async def abort(self) -> None:
        if self._proc.returncode is None:
            self._proc.kill()
        await self._proc.wait()
        await self._stderr_task
        _remove(self._out_path)


class FFmpegVideoCodec:
    """VideoCodec over ffmpeg/ffprobe subprocesses."""

    def __init__(self, ffmpeg: str = FFMPEG_BIN, ffprobe: str = FFPROBE_BIN, audio_bitrate: str = VIDEO_AUDIO_BITRATE):
        self.ffmpeg = ffmpeg
        self.ffprobe = ffprobe
        self.audio_bitrate = audio_bitrate
        self._encoders: Optional[set[str]] = None

    async def available_encoders(self) -> set[str]:
        if self._encoders is None:
            try:
                output = await _run([self.ffmpeg, "-hide_banner", "-encoders"])
            except subprocess.CalledProcessError as e:
                logger.warning("Could not list ffmpeg encoders: %s", _stderr_text(e))
                output = b""
            self._encoders = parse_encoders(output.decode("utf-8", "replace"))
            logger.info("ffmpeg WebM encoders available: %s", sorted(self._encoders & set(_MIME_ENCODERS["video/webm"])))
        return self._encoders

    async def _encoder_for(self, mime_type: str) -> Optional[str]:
        available = await self.available_encoders()
        return next((name for name in _MIME_ENCODERS.get(mime_type, []) if name in available), None)

    async def supports(self, mime_type: str) -> bool:
        return await self._encoder_for(mime_type) is not None

    async def probe(self, data: bytes, info: SourceInfo) -> VideoMetadata:
        path = _write_temp(data, info.extension or ".bin")
        try:
            output = await _run([
                self.ffprobe, "-v", "error",
                "-show_entries", "stream=codec_type,width,height,avg_frame_rate,r_frame_rate,duration:format=duration",
                "-of", "json", str(path),
            ])
        except subprocess.CalledProcessError as e:
            raise DecodeError(f"Failed to load video file {info.name}: {_stderr_text(e)}") from e
        finally:
            _remove(path)
        try:
            return parse_probe(json.loads(output.decode("utf-8", "replace") or "{}"))
        except json.JSONDecodeError as e:
            raise DecodeError(f"Failed to read video metadata for {info.name}") from e

    async def frame_timestamps(self, path: Path, start: float, seconds: float) -> list[float]:
        try:
            output = await _run([
                self.ffprobe, "-v", "error", "-select_streams", "v:0",
                "-read_intervals", f"{start:.3f}%+{seconds:.3f}",
                "-show_entries", "frame=best_effort_timestamp_time,pts_time",
                "-of", "json", str(path),
            ])
        except subprocess.CalledProcessError as e:
            raise DecodeError(f"Failed to read frame timestamps: {_stderr_text(e)}") from e
        frames = json.loads(output.decode("utf-8", "replace") or "{}").get("frames") or []
        timestamps = []
        for frame in frames:
            value = parse_time_value(frame.get("best_effort_timestamp_time"))
            if value is None:
                value = parse_time_value(frame.get("pts_time"))
            if value is not None:
                timestamps.append(value)
        return timestamps

    async def open_source(self, data: bytes, metadata: VideoMetadata, width: int, height: int) -> FFmpegFrameSource:
        source = FFmpegFrameSource(self, _write_temp(data, ".src"), metadata, width, height)
        try:
            await source.seek(0)
        except BaseException:
            await source.close()
            raise
        return source

    async def open_encoder(
        self,
        surface: Surface,
        fps: float,
        bitrate: int,
        mime_type: str,
        audio_from: Optional[FFmpegFrameSource] = None,
    ) -> FFmpegEncoder:
        encoder = await self._encoder_for(mime_type)
        if encoder is None:
            raise UnsupportedFormatError(f"No ffmpeg encoder available for {mime_type}")
        fd, out_name = tempfile.mkstemp(prefix="converter-", suffix=".webm")
        os.close(fd)
        out_path = Path(out_name)
        cmd = [
            self.ffmpeg, "-v", "error", "-y",
            "-f", "rawvideo", "-pix_fmt", "rgb24",
            "-s", f"{surface.width}x{surface.height}", "-r", f"{fps:g}",
            "-i", "pipe:0",
        ]
        if audio_from is not None:
            cmd += ["-i", str(audio_from.path), "-map", "0:v:0", "-map", "1:a:0?",
                    "-c:a", "libopus", "-b:a", self.audio_bitrate, "-shortest"]
        cmd += ["-c:v", encoder, "-b:v", str(bitrate), "-pix_fmt", "yuv420p", "-f", "webm", str(out_path)]
        try:
            proc = await _spawn(
                cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except BaseException:
            _remove(out_path)
            raise
        logger.debug("Started %s encoder %sx%s @ %s fps, %s bps", encoder, surface.width, surface.height, fps, bitrate)
        return FFmpegEncoder(proc, out_path)

    async def thumbnail(self, data: bytes, at_seconds: float) -> bytes:
        path = _write_temp(data, ".webm")
        try:
            output = await _run([
                self.ffmpeg, "-v", "error", "-nostdin",
                "-ss", f"{at_seconds:.3f}", "-i", str(path),
                "-frames:v", "1", "-f", "image2pipe", "-c:v", "mjpeg",
                # mjpeg qscale: 2 (best) .. 31 (worst)
                "-q:v", str(THUMBNAIL_QSCALE),
                "pipe:1",
            ])
        except subprocess.CalledProcessError as e:
            raise EncodeError(f"Thumbnail extraction failed: {_stderr_text(e)}") from e
        finally:
            _remove(path)
        if not output:
            raise EncodeError("Thumbnail extraction produced no image")
        return output

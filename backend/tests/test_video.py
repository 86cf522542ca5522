import logging

import pytest

from converter.config import DEFAULT_FPS, STUCK_FRAME_LIMIT
from converter.conversion.codec import VideoMetadata
from converter.conversion.models import Dimensions, SourceInfo, VideoSettings
from converter.conversion.progress import ProgressReporter
from converter.conversion.resize import crf_to_bitrate
from converter.conversion.video import (
    FpsDetector,
    choose_output_format,
    decode_failure_message,
    detection_start,
    encode_video,
    playback_progress,
    recording_timeout,
)
from converter.errors import (
    ConversionTimeoutError,
    DecodeError,
    EncodeError,
    StuckError,
    UnsupportedFormatError,
)

from conftest import (
    FakeEncoder,
    FakeFrameClock,
    FakeFrameSource,
    FakeVideoCodec,
    RecordingSleep,
    StepClock,
)

MP4 = SourceInfo(name="clip.mp4", mime_type="video/mp4", size=100)
FIXED_FPS = VideoSettings(fps=30)


def test_helpers():
    assert detection_start(10) == 1.0
    assert detection_start(2) == 0.5
    assert recording_timeout(5) == 30.0
    assert recording_timeout(100) == 200.0
    assert playback_progress(0, 10) == 60
    assert playback_progress(5, 10) == 79
    assert playback_progress(10, 10) == 98
    assert playback_progress(1, 0) == 60
    assert "WMV" in decode_failure_message("old.wmv")
    assert "MP4 or WebM formats" in decode_failure_message("a.mov")
    assert "unsupported codec" in decode_failure_message("a.mp4")


@pytest.mark.asyncio
async def test_converts_all_frames(publish, events):
    codec = FakeVideoCodec()
    result = await encode_video(b"src", MP4, FIXED_FPS, codec, ProgressReporter("v", publish))

    assert result.stop_reason == "ended"
    # 2 s of 10 fps source resampled to 30 fps keeps its length
    assert result.data == b"W" * 60
    assert result.mime_type == "video/webm;codecs=vp8"
    assert result.thumbnail == b"JPEG"
    assert result.original == result.final == Dimensions(1920, 1080)
    assert result.fps == 30.0
    assert codec.encoder_args["bitrate"] == crf_to_bitrate(28, 1920, 1080)
    assert codec.encoder_args["fps"] == 30.0
    assert codec.sources[0].closed

    # Recording reports every 10 output frames inside the 60-98 band
    progress = [e["progress"] for e in events if "progress" in e]
    assert progress == [10, 20, 30, 40, 50, 60, 66, 72, 78, 85, 91, 97, 100]
    assert {"original_dimensions": Dimensions(1920, 1080), "final_dimensions": Dimensions(1920, 1080), "duration": 2.0} in events


@pytest.mark.asyncio
async def test_applies_preset_resolution():
    codec = FakeVideoCodec()
    settings = VideoSettings(resolution="1280x720", fps=25, crf=18)
    result = await encode_video(b"src", MP4, settings, codec)

    assert result.final == Dimensions(1280, 720)
    assert (codec.encoder_args["width"], codec.encoder_args["height"]) == (1280, 720)
    assert result.bitrate == crf_to_bitrate(18, 1280, 720)


@pytest.mark.asyncio
async def test_zero_dimensions_is_decode_error():
    codec = FakeVideoCodec(metadata=VideoMetadata(width=0, height=0, duration=0.0))
    with pytest.raises(DecodeError, match="Cannot process clip.mp4"):
        await encode_video(b"src", MP4, FIXED_FPS, codec)


@pytest.mark.asyncio
async def test_no_webm_encoder_is_unsupported():
    codec = FakeVideoCodec(supported=set())
    with pytest.raises(UnsupportedFormatError, match="WebM"):
        await encode_video(b"src", MP4, FIXED_FPS, codec)
    assert codec.sources == []


@pytest.mark.asyncio
async def test_prefers_first_supported_format():
    assert await choose_output_format(FakeVideoCodec(supported={"video/webm"})) == "video/webm"
    assert await choose_output_format(FakeVideoCodec(supported={"video/webm;codecs=vp9", "video/webm"})) == "video/webm;codecs=vp9"


@pytest.mark.asyncio
async def test_audio_requested_but_missing_warns(caplog):
    codec = FakeVideoCodec()
    with caplog.at_level(logging.WARNING, logger="converter.video"):
        await encode_video(b"src", MP4, VideoSettings(fps=30, audio_enabled=True), codec)
    assert codec.encoder_args["audio_from"] is None
    assert "no audio track" in caplog.text


@pytest.mark.asyncio
async def test_audio_is_passed_through_when_present():
    codec = FakeVideoCodec(metadata=VideoMetadata(width=640, height=360, duration=1.0, frame_rate=10.0, has_audio=True))
    await encode_video(b"src", MP4, VideoSettings(fps=30), codec)
    assert codec.encoder_args["audio_from"] is codec.sources[0]

    codec = FakeVideoCodec(metadata=VideoMetadata(width=640, height=360, duration=1.0, frame_rate=10.0, has_audio=True))
    await encode_video(b"src", MP4, VideoSettings(fps=30, audio_enabled=False), codec)
    assert codec.encoder_args["audio_from"] is None


@pytest.mark.asyncio
async def test_stalled_source_is_force_completed():
    codec = FakeVideoCodec(source_factory=lambda md: FakeFrameSource(md.duration, stall_after=5))
    result = await encode_video(b"src", MP4, FIXED_FPS, codec)

    assert result.stop_reason == "stuck"
    # Output covers 0-0.5 s; the stalled frame is redrawn until the stuck limit trips
    assert len(result.data) == 15
    assert len(codec.sources[0].drawn) == 6 + STUCK_FRAME_LIMIT


@pytest.mark.asyncio
async def test_stalled_source_without_frames_raises_stuck():
    bad = set(range(100))
    codec = FakeVideoCodec(source_factory=lambda md: FakeFrameSource(md.duration, stall_after=0, bad_frames=bad))
    with pytest.raises(StuckError):
        await encode_video(b"src", MP4, FIXED_FPS, codec)
    assert codec.sources[0].closed


@pytest.mark.asyncio
async def test_recording_timeout_keeps_partial_output():
    result = await encode_video(b"src", MP4, FIXED_FPS, FakeVideoCodec(), clock=StepClock(10.0))
    assert result.stop_reason == "timeout"
    assert result.data == b"WW"


@pytest.mark.asyncio
async def test_recording_timeout_without_frames_raises():
    with pytest.raises(ConversionTimeoutError):
        await encode_video(b"src", MP4, FIXED_FPS, FakeVideoCodec(), clock=StepClock(100.0))


@pytest.mark.asyncio
async def test_bad_frames_are_skipped():
    codec = FakeVideoCodec(source_factory=lambda md: FakeFrameSource(md.duration, bad_frames={3, 4}))
    result = await encode_video(b"src", MP4, FIXED_FPS, codec)
    assert len(result.data) == 60
    assert 3 not in codec.sources[0].drawn


@pytest.mark.asyncio
async def test_encoder_failure_aborts_and_closes():
    encoder = FakeEncoder(fail_on_write=True)
    codec = FakeVideoCodec(encoder=encoder)
    with pytest.raises(EncodeError):
        await encode_video(b"src", MP4, FIXED_FPS, codec)
    assert encoder.aborted and not encoder.finalized
    assert codec.sources[0].closed


@pytest.mark.asyncio
async def test_thumbnail_failure_is_not_fatal():
    codec = FakeVideoCodec(thumbnail_error=EncodeError("no jpeg"))
    result = await encode_video(b"src", MP4, FIXED_FPS, codec)
    assert result.thumbnail is None
    assert result.data


@pytest.mark.asyncio
async def test_original_fps_uses_detector_and_rewinds():
    clock = FakeFrameClock([1.0 + i / 25 for i in range(40)])
    codec = FakeVideoCodec(
        metadata=VideoMetadata(width=640, height=360, duration=4.0, frame_rate=10.0),
        source_factory=lambda md: FakeFrameSource(md.duration, clock=clock),
    )
    result = await encode_video(b"src", MP4, VideoSettings(fps="original"), codec)

    assert result.fps == 25
    assert codec.encoder_args["fps"] == 25
    assert codec.sources[0].seeks == [1.0, 0]


@pytest.mark.asyncio
async def test_detector_with_frame_clock():
    detector = FpsDetector()
    source = FakeFrameSource(10.0, clock=FakeFrameClock([1.0 + i * 1001 / 24000 for i in range(60)]))
    assert await detector.detect(source) == pytest.approx(23.976)
    assert source.seeks == [1.0]


@pytest.mark.asyncio
async def test_detector_polling_fallback():
    sleep = RecordingSleep()
    detector = FpsDetector(clock=StepClock(0.04), sleep=sleep)
    source = FakeFrameSource(10.0, rate=25.0)
    assert await detector.detect(source) == 25
    assert all(delay == detector.poll_interval for delay in sleep.delays)


@pytest.mark.asyncio
async def test_detector_polling_on_short_clip_defaults():
    detector = FpsDetector(clock=StepClock(0.04), sleep=RecordingSleep())
    source = FakeFrameSource(0.2, rate=25.0)
    assert await detector.detect(source) == DEFAULT_FPS


@pytest.mark.asyncio
async def test_detector_times_out_to_default():
    detector = FpsDetector(timeout=0.05)
    source = FakeFrameSource(10.0, clock=FakeFrameClock(hang=True))
    assert await detector.detect(source) == DEFAULT_FPS


@pytest.mark.asyncio
async def test_detector_clock_errors_default():
    detector = FpsDetector()
    source = FakeFrameSource(10.0, clock=FakeFrameClock([1.0, 1.04]))
    assert await detector.detect(source) == DEFAULT_FPS


@pytest.mark.asyncio
async def test_downsampling_keeps_length():
    codec = FakeVideoCodec(metadata=VideoMetadata(width=640, height=360, duration=2.0, frame_rate=30.0))
    result = await encode_video(b"src", MP4, VideoSettings(fps=10), codec)

    # 30 fps source, 20 output frames at 10 fps: still 2 s
    assert len(result.data) == 20
    assert len(result.data) / result.fps == pytest.approx(2.0)


@pytest.mark.asyncio
@pytest.mark.parametrize("fps", [12, 24, 25, 30, 60])
async def test_output_length_matches_source(fps):
    codec = FakeVideoCodec(metadata=VideoMetadata(width=640, height=360, duration=2.0, frame_rate=10.0))
    result = await encode_video(b"src", MP4, VideoSettings(fps=fps), codec)
    assert abs(len(result.data) / fps - 2.0) < 0.1


@pytest.mark.asyncio
async def test_unknown_duration_records_until_source_ends(publish, events):
    codec = FakeVideoCodec(
        metadata=VideoMetadata(width=640, height=360, duration=0.0, frame_rate=10.0),
        source_factory=lambda md: FakeFrameSource(1.0),
    )
    result = await encode_video(b"src", MP4, FIXED_FPS, codec, ProgressReporter("v", publish))

    assert result.stop_reason == "ended"
    assert len(result.data) == 30
    progress = [e["progress"] for e in events if "progress" in e]
    assert progress == [10, 20, 30, 40, 50, 60, 100]


@pytest.mark.asyncio
async def test_short_clip_uses_declared_frame_rate():
    clock = FakeFrameClock([0.125, 0.158])
    codec = FakeVideoCodec(
        metadata=VideoMetadata(width=640, height=360, duration=0.5, frame_rate=30.0),
        source_factory=lambda md: FakeFrameSource(md.duration, rate=30.0, clock=clock),
    )
    result = await encode_video(b"src", MP4, VideoSettings(fps="original"), codec)
    assert result.fps == 30


@pytest.mark.asyncio
async def test_detector_falls_back_to_declared_rate():
    detector = FpsDetector()
    source = FakeFrameSource(10.0, clock=FakeFrameClock([1.0, 1.04]))
    assert await detector.detect(source, fallback=29.97) == pytest.approx(29.97)
    source = FakeFrameSource(10.0, clock=FakeFrameClock([1.0, 1.04]))
    assert await detector.detect(source, fallback=0.0) == DEFAULT_FPS

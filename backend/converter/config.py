"""Converter configuration. Loads from environment and .env file."""
import logging
import os
from pathlib import Path

from dotenv import load_dotenv

BASE_DIR = Path(__file__).resolve().parent.parent
# Load .env from cwd, then backend/.env, then project root .env
load_dotenv()
load_dotenv(BASE_DIR / ".env")
load_dotenv(BASE_DIR.parent / ".env")

# Source limits (env)
MAX_IMAGE_SIZE_MB = int(os.getenv("MAX_IMAGE_SIZE_MB", "50"))
MAX_IMAGE_SIZE_BYTES = MAX_IMAGE_SIZE_MB * 1024 * 1024
MAX_VIDEO_SIZE_MB = int(os.getenv("MAX_VIDEO_SIZE_MB", "500"))
MAX_VIDEO_SIZE_BYTES = MAX_VIDEO_SIZE_MB * 1024 * 1024
# Largest raster side a drawing surface can address
MAX_RASTER_DIMENSION = int(os.getenv("MAX_RASTER_DIMENSION", "16384"))

# Supported inputs
IMAGE_MIME_TYPES = {
    "image/jpeg",
    "image/jpg",
    "image/png",
    "image/gif",
    "image/bmp",
    "image/webp",
}
VIDEO_NATIVE_MIME_TYPES = {"video/mp4", "video/webm", "video/ogg"}
VIDEO_ADDITIONAL_MIME_TYPES = {"video/mov", "video/quicktime", "video/3gpp"}
VIDEO_REJECTED_MIME_TYPES = {"video/avi", "video/x-msvideo", "video/x-ms-wmv", "video/x-ms-asf"}
VIDEO_EXTENSIONS = {".mp4", ".webm", ".ogg", ".mov", ".3gp"}
VIDEO_REJECTED_EXTENSIONS = {".avi", ".wmv", ".asf"}

# Outputs
IMAGE_OUTPUT_FORMAT = "webp"
IMAGE_OUTPUT_EXTENSION = ".webp"
VIDEO_OUTPUT_EXTENSION = ".webm"
# Preference order when probing the host encoder
VIDEO_OUTPUT_MIME_TYPES = [
    "video/webm;codecs=vp8",
    "video/webm;codecs=vp9",
    "video/webm",
]

# Conversion options (env overrides)
DEFAULT_QUALITY = int(os.getenv("DEFAULT_QUALITY", "80"))
MIN_QUALITY = 10
MAX_QUALITY = 100
# Pillow WebP "method": 0 (fast) .. 6 (slowest, smallest)
WEBP_EFFORT = int(os.getenv("WEBP_EFFORT", "4"))
DEFAULT_RESIZE_MAX_WIDTH = 2048
DEFAULT_RESIZE_MAX_HEIGHT = 2048
DEFAULT_CRF = 28
MIN_CRF = 0
MAX_CRF = 53

# Video resolution presets shown to the user (name -> (width, height))
RESOLUTION_PRESETS = {
    "320x240": (320, 240),
    "640x480": (640, 480),
    "1280x720": (1280, 720),
    "1920x1080": (1920, 1080),
    "2560x1440": (2560, 1440),
    "3840x2160": (3840, 2160),
}
FPS_CHOICES = [12, 15, 24, 25, 30, 48, 50, 60]
COMMON_FRAME_RATES = [12, 15, 23.976, 24, 25, 29.97, 30, 48, 50, 59.94, 60]
DEFAULT_FPS = 24
MIN_DETECTED_FPS = 5
MAX_DETECTED_FPS = 120

# Bitrate planning
NOMINAL_BITRATE_FPS = 24
MIN_VIDEO_BITRATE = 50_000
MAX_VIDEO_BITRATE = 3_000_000
VIDEO_AUDIO_BITRATE = os.getenv("VIDEO_AUDIO_BITRATE", "128k")

# Video recording bounds
FPS_SAMPLE_SECONDS = 1.0
FPS_DETECTION_TIMEOUT_SECONDS = 3.0
FPS_POLL_INTERVAL_SECONDS = 0.016
STUCK_FRAME_LIMIT = 100
MIN_RECORDING_TIMEOUT_SECONDS = 30.0
PROGRESS_EVERY_N_FRAMES = 10
THUMBNAIL_TIMEOUT_SECONDS = 5.0
# ffmpeg mjpeg scale for thumbnails: 2 (best) .. 31 (worst)
THUMBNAIL_QSCALE = 5

# Concurrency
MAX_CONCURRENCY = int(os.getenv("MAX_CONCURRENCY", "4"))
# Used when the host does not report a CPU count
FALLBACK_PARALLELISM = 3
BATCH_PAUSE_MS = int(os.getenv("BATCH_PAUSE_MS", "100"))
RETRY_ATTEMPTS = int(os.getenv("RETRY_ATTEMPTS", "2"))
RETRY_BACKOFF_MS = int(os.getenv("RETRY_BACKOFF_MS", "1000"))

# External tools
FFMPEG_BIN = os.getenv("FFMPEG_BIN", "ffmpeg")
FFPROBE_BIN = os.getenv("FFPROBE_BIN", "ffprobe")

# Logging
LOG_LEVEL = os.getenv("LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, LOG_LEVEL, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    datefmt="%Y-%m-%d %H:%M:%S",
)

"""Text watermark compositing and the background watermark job queue.

Compositing is best-effort: anything Pillow cannot decode, compose or
re-encode comes back as the original bytes, so a broken watermark never
blocks an upload.
"""

import json
import logging
import queue
import re
import shutil
import threading
import time
import uuid
from dataclasses import asdict, dataclass
from functools import lru_cache
from io import BytesIO
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from PIL import Image, ImageDraw, ImageFilter, ImageFont

from . import storage
from .errors import ValidationError


POSITIONS = ("top-left", "top-right", "bottom-left", "bottom-right", "center")
FAST_MODE_MAX_WIDTH = 2000
SHADOW_OFFSET = (2, 2)
SHADOW_ALPHA_RATIO = 0.8
SHADOW_BLUR_RADIUS = 2
MAX_TEXT_LENGTH = 100
MAX_JOB_ATTEMPTS = 3
RETRY_BACKOFF_SECONDS = 2.0
FONT_CANDIDATES = ("DejaVuSans-Bold.ttf", "Arial Bold.ttf", "arialbd.ttf")

_HEX_COLOR_PATTERN = re.compile(r"^#[0-9A-Fa-f]{6}$")

logger = logging.getLogger("imghost.watermark")


@dataclass
class WatermarkSpec:
    enabled: bool = True
    text: str = storage.PUBLIC_DOMAIN
    position: str = "bottom-right"
    opacity: float = 0.6
    font_size: int = 20
    color: str = "#ffffff"
    padding: int = 15
    async_mode: bool = False
    fast_mode: bool = False

    @classmethod
    def from_dict(cls, raw: Optional[Dict[str, Any]]) -> "WatermarkSpec":
        """Build a spec from stored settings, keeping defaults for bad values."""

        spec = cls()
        if not isinstance(raw, dict):
            return spec
        try:
            return validate_watermark_settings(raw, base=spec)
        except ValidationError as error:
            logger.warning("stored_watermark_settings_invalid error=%s", error.message)
            return spec

    def to_dict(self) -> Dict[str, Any]:
        return {
            "enabled": self.enabled,
            "text": self.text,
            "position": self.position,
            "opacity": self.opacity,
            "fontSize": self.font_size,
            "color": self.color,
            "padding": self.padding,
            "async": self.async_mode,
            "fastMode": self.fast_mode,
        }


def _require_bool(payload: Dict[str, Any], key: str, default: bool) -> bool:
    if key not in payload or payload[key] is None:
        return default
    value = payload[key]
    if not isinstance(value, bool):
        raise ValidationError(f"{key} must be a boolean")
    return value


def _require_number(payload: Dict[str, Any], key: str, default, low, high):
    if key not in payload or payload[key] is None:
        return default
    value = payload[key]
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        raise ValidationError(f"{key} must be a number between {low} and {high}")
    if value < low or value > high:
        raise ValidationError(f"{key} must be a number between {low} and {high}")
    return value


def validate_watermark_settings(
    payload: Dict[str, Any], base: Optional[WatermarkSpec] = None
) -> WatermarkSpec:
    """Validate a settings payload (API field names) on top of *base*."""

    if not isinstance(payload, dict):
        raise ValidationError("Watermark settings must be a JSON object")
    current = base or WatermarkSpec()

    text = payload.get("text", current.text)
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("text must be a non-empty string")
    if len(text) > MAX_TEXT_LENGTH:
        raise ValidationError(f"text must be at most {MAX_TEXT_LENGTH} characters")

    position = payload.get("position", current.position)
    if position not in POSITIONS:
        raise ValidationError("Invalid position")

    color = payload.get("color", current.color)
    if not isinstance(color, str) or not _HEX_COLOR_PATTERN.match(color):
        raise ValidationError("color must be a valid hex color")

    return WatermarkSpec(
        enabled=_require_bool(payload, "enabled", current.enabled),
        text=text,
        position=position,
        opacity=float(_require_number(payload, "opacity", current.opacity, 0, 1)),
        font_size=int(_require_number(payload, "fontSize", current.font_size, 8, 100)),
        color=color.lower(),
        padding=int(_require_number(payload, "padding", current.padding, 0, 100)),
        async_mode=_require_bool(payload, "async", current.async_mode),
        fast_mode=_require_bool(payload, "fastMode", current.fast_mode),
    )


@lru_cache(maxsize=32)
def _load_font(size: int) -> ImageFont.ImageFont:
    for candidate in FONT_CANDIDATES:
        try:
            return ImageFont.truetype(candidate, size=size)
        except OSError:
            continue
    return ImageFont.load_default(size=size)


def _hex_to_rgb(color: str) -> Tuple[int, int, int]:
    value = color.lstrip("#")
    return int(value[0:2], 16), int(value[2:4], 16), int(value[4:6], 16)


def _anchor(
    position: str, image_size: Tuple[int, int], text_size: Tuple[int, int], padding: int
) -> Tuple[int, int]:
    width, height = image_size
    text_width, text_height = text_size
    if position == "top-left":
        x, y = padding, padding
    elif position == "top-right":
        x, y = width - text_width - padding, padding
    elif position == "bottom-left":
        x, y = padding, height - text_height - padding
    elif position == "center":
        x, y = (width - text_width) // 2, (height - text_height) // 2
    else:
        x, y = width - text_width - padding, height - text_height - padding
    return max(0, x), max(0, y)


def _save_options(image_format: str, fast_mode: bool) -> Dict[str, Any]:
    if image_format == "PNG":
        return {"compress_level": 1 if fast_mode else 6}
    if image_format == "JPEG":
        return {"quality": 80 if fast_mode else 90}
    if image_format == "WEBP":
        return {"quality": 80 if fast_mode else 90, "method": 0 if fast_mode else 4}
    return {}


ENCODABLE_FORMATS = {"PNG", "JPEG", "WEBP", "GIF", "BMP", "TIFF"}
OPAQUE_FORMATS = {"JPEG", "BMP"}


def _composite(image_bytes: bytes, spec: WatermarkSpec) -> bytes:
    with Image.open(BytesIO(image_bytes)) as source:
        image_format = source.format
        if image_format not in ENCODABLE_FORMATS:
            raise ValueError(f"unsupported image format: {image_format}")
        if getattr(source, "is_animated", False):
            raise ValueError("animated images are not watermarked")

        base = source.convert("RGBA")

    if spec.fast_mode and base.width > FAST_MODE_MAX_WIDTH:
        new_height = max(1, round(base.height * FAST_MODE_MAX_WIDTH / base.width))
        base = base.resize((FAST_MODE_MAX_WIDTH, new_height), Image.Resampling.BILINEAR)

    font = _load_font(spec.font_size)
    text_alpha = int(round(255 * spec.opacity))
    shadow_alpha = int(round(text_alpha * SHADOW_ALPHA_RATIO))

    measure = ImageDraw.Draw(base)
    left, top, right, bottom = measure.textbbox((0, 0), spec.text, font=font)
    x, y = _anchor(spec.position, base.size, (right - left, bottom - top), spec.padding)
    origin = (x - left, y - top)

    shadow = Image.new("RGBA", base.size, (0, 0, 0, 0))
    ImageDraw.Draw(shadow).text(
        (origin[0] + SHADOW_OFFSET[0], origin[1] + SHADOW_OFFSET[1]),
        spec.text,
        font=font,
        fill=(0, 0, 0, shadow_alpha),
    )
    shadow = shadow.filter(ImageFilter.GaussianBlur(SHADOW_BLUR_RADIUS))

    overlay = Image.new("RGBA", base.size, (0, 0, 0, 0))
    ImageDraw.Draw(overlay).text(
        origin, spec.text, font=font, fill=(*_hex_to_rgb(spec.color), text_alpha)
    )

    composed = Image.alpha_composite(Image.alpha_composite(base, shadow), overlay)
    if image_format in OPAQUE_FORMATS:
        composed = composed.convert("RGB")

    buffer = BytesIO()
    composed.save(buffer, format=image_format, **_save_options(image_format, spec.fast_mode))
    return buffer.getvalue()


def apply_watermark(image_bytes: bytes, spec: WatermarkSpec) -> bytes:
    """Return *image_bytes* with the watermark described by *spec* drawn on it.

    Disabled specs, empty text and every decode/compose/encode failure
    return the input object unchanged.
    """

    if not spec.enabled or not spec.text:
        return image_bytes
    started = time.monotonic()
    try:
        result = _composite(image_bytes, spec)
    except Exception as error:  # noqa: BLE001
        logger.warning(
            "watermark_failed position=%s fast=%s error=%s",
            spec.position,
            spec.fast_mode,
            error,
        )
        return image_bytes
    logger.debug(
        "watermark_applied position=%s fast=%s bytes_in=%d bytes_out=%d elapsed_ms=%.1f",
        spec.position,
        spec.fast_mode,
        len(image_bytes),
        len(result),
        (time.monotonic() - started) * 1000,
    )
    return result


def watermark_file(path: Path, spec: WatermarkSpec, source: Optional[Path] = None) -> bool:
    """Composite onto the file at *path* in place.

    When *source* is given the pixels are read from it instead, which keeps
    re-runs from stacking a second watermark on an already marked file.
    Returns ``True`` when the stored file changed.
    """

    path = Path(path)
    original = Path(source or path).read_bytes()
    marked = apply_watermark(original, spec)
    if marked is original:
        return False
    storage.write_atomic(path, marked)
    return True


class WatermarkQueue:
    """Persisted background queue that watermarks already published files."""

    def __init__(self, workers: int = storage.DEFAULT_WATERMARK_WORKERS) -> None:
        self._queue: "queue.Queue[Optional[str]]" = queue.Queue()
        self._workers = max(1, int(workers))
        self._threads: List[threading.Thread] = []
        self._timers: List[threading.Timer] = []
        self._lock = threading.Lock()

    @property
    def running(self) -> bool:
        return any(thread.is_alive() for thread in self._threads)

    def start(self) -> int:
        """Start the worker threads and re-enqueue unfinished jobs."""

        with self._lock:
            if self.running:
                return 0
            self._threads = []
            for index in range(self._workers):
                thread = threading.Thread(
                    target=self._run,
                    name=f"imghost-watermark-{index}",
                    daemon=True,
                )
                thread.start()
                self._threads.append(thread)
        return self.requeue_pending()

    def requeue_pending(self) -> int:
        """Re-enqueue pending jobs, including ones interrupted mid-run."""

        with storage.get_db() as conn:
            conn.execute(
                "UPDATE watermark_jobs SET status = 'pending' WHERE status = 'running'"
            )
            conn.commit()
            rows = conn.execute(
                "SELECT id FROM watermark_jobs WHERE status = 'pending' ORDER BY created_at"
            ).fetchall()
        for row in rows:
            self._queue.put(row["id"])
        if rows:
            logger.info("watermark_jobs_requeued count=%d", len(rows))
        return len(rows)

    def submit(self, asset_id: str, target_path: Path, spec: WatermarkSpec) -> str:
        """Persist a job for the published file at *target_path* and enqueue it."""

        target_path = Path(target_path)
        job_id = uuid.uuid4().hex
        source_path = storage.PENDING_DIR / f"{job_id}{target_path.suffix}"
        shutil.copyfile(target_path, source_path)
        now = time.time()
        try:
            with storage.get_db() as conn:
                conn.execute(
                    """
                    INSERT INTO watermark_jobs (
                        id, asset_id, target_path, source_path, spec,
                        status, attempts, created_at, updated_at
                    )
                    VALUES (?, ?, ?, ?, ?, 'pending', 0, ?, ?)
                    """,
                    (
                        job_id,
                        asset_id,
                        str(target_path),
                        str(source_path),
                        json.dumps(asdict(spec)),
                        now,
                        now,
                    ),
                )
                conn.commit()
        except Exception:
            source_path.unlink(missing_ok=True)
            raise

        self.start()
        self._queue.put(job_id)
        logger.info("watermark_job_queued job_id=%s asset_id=%s", job_id, asset_id)
        return job_id

    def _set_status(self, job_id: str, status: str, expected: Optional[str] = None) -> bool:
        query = "UPDATE watermark_jobs SET status = ?, updated_at = ? WHERE id = ?"
        params: Tuple[Any, ...] = (status, time.time(), job_id)
        if expected is not None:
            query += " AND status = ?"
            params += (expected,)
        with storage.get_db() as conn:
            cursor = conn.execute(query, params)
            conn.commit()
        return cursor.rowcount > 0

    def _retry_later(self, job_id: str, attempts: int) -> None:
        delay = RETRY_BACKOFF_SECONDS * attempts
        with self._lock:
            if not self.running:
                return
            timer = threading.Timer(delay, self._queue.put, args=(job_id,))
            timer.daemon = True
            self._timers.append(timer)
            timer.start()

    def _handle_failure(self, job_id: str, row, source_path: Path) -> None:
        attempts = int(row["attempts"])
        if attempts >= MAX_JOB_ATTEMPTS:
            source_path.unlink(missing_ok=True)
            if self._set_status(job_id, "failed", expected="running"):
                storage.set_asset_watermark_state(row["asset_id"], "failed")
            logger.error("watermark_job_failed job_id=%s attempts=%d", job_id, attempts)
            return
        if not self._set_status(job_id, "pending", expected="running"):
            # Cancelled while running, usually because the owner was deleted.
            source_path.unlink(missing_ok=True)
            logger.info("watermark_job_cancelled job_id=%s", job_id)
            return
        logger.warning("watermark_job_retry job_id=%s attempts=%d", job_id, attempts)
        self._retry_later(job_id, attempts)

    def process(self, job_id: str) -> bool:
        """Run one job; safe to call again for a job that already finished.

        A job that raises after being claimed goes back to ``pending`` and is
        retried with a growing delay, until ``MAX_JOB_ATTEMPTS`` marks it
        ``failed``.
        """

        with storage.get_db() as conn:
            claimed = conn.execute(
                """
                UPDATE watermark_jobs
                SET status = 'running', attempts = attempts + 1, updated_at = ?
                WHERE id = ? AND status = 'pending'
                """,
                (time.time(), job_id),
            )
            conn.commit()
            if claimed.rowcount == 0:
                return False
            row = conn.execute(
                "SELECT * FROM watermark_jobs WHERE id = ?", (job_id,)
            ).fetchone()

        source_path = Path(row["source_path"])
        target_path = Path(row["target_path"])
        if row["attempts"] > MAX_JOB_ATTEMPTS:
            logger.error("watermark_job_abandoned job_id=%s attempts=%d", job_id, row["attempts"])
            source_path.unlink(missing_ok=True)
            self._set_status(job_id, "failed", expected="running")
            return False

        try:
            stored = json.loads(row["spec"])
            spec = WatermarkSpec(**stored)
        except (TypeError, ValueError):
            logger.error("watermark_job_spec_invalid job_id=%s", job_id)
            source_path.unlink(missing_ok=True)
            self._set_status(job_id, "failed", expected="running")
            return False

        try:
            with storage.path_lock(target_path):
                if not target_path.exists() or not source_path.exists():
                    source_path.unlink(missing_ok=True)
                    self._set_status(job_id, "cancelled", expected="running")
                    logger.info("watermark_job_cancelled job_id=%s", job_id)
                    return False
                changed = watermark_file(target_path, spec, source=source_path)
        except Exception:  # noqa: BLE001
            logger.exception("watermark_job_error job_id=%s", job_id)
            self._handle_failure(job_id, row, source_path)
            return False

        finished = self._set_status(job_id, "done", expected="running")
        source_path.unlink(missing_ok=True)
        if not finished:
            logger.info("watermark_job_cancelled job_id=%s", job_id)
            return False
        storage.set_asset_watermark_state(row["asset_id"], "applied" if changed else "skipped")
        logger.info("watermark_job_done job_id=%s changed=%s", job_id, changed)
        return changed

    def _run(self) -> None:
        while True:
            job_id = self._queue.get()
            try:
                if job_id is None:
                    return
                self.process(job_id)
            except Exception:  # noqa: BLE001
                logger.exception("watermark_job_error job_id=%s", job_id)
            finally:
                self._queue.task_done()

    def join(self) -> None:
        """Block until every enqueued job has been handled."""

        self._queue.join()

    def shutdown(self, wait: bool = False) -> None:
        with self._lock:
            for timer in self._timers:
                timer.cancel()
            self._timers = []
            threads = list(self._threads)
            for _ in threads:
                self._queue.put(None)
        if wait:
            for thread in threads:
                thread.join()


watermark_queue = WatermarkQueue()

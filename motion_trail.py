#!/usr/bin/env python3
"""Live motion trails: blend a time-sliced history of frames under the current one."""

from __future__ import annotations

import argparse
import logging
import math
import queue
import threading
from pathlib import Path
from typing import Callable, NamedTuple

import cv2
import numpy as np

ASSUMED_FRAME_RATE = 60
DEFAULT_DURATION_SECONDS = 1.0
DEFAULT_SLICE_COUNT = 5
MIN_DURATION_SECONDS = 0.1
MAX_DURATION_SECONDS = 5.0
MAX_SLICES = 20
DEFAULT_CAMERA_SIZE = (1920, 1080)
WINDOW_NAME = "Motion Trail"

logger = logging.getLogger(__name__)


class SourceUnavailable(RuntimeError):
    """The frame source could not produce a frame this tick."""


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def capacity_for_duration(duration_seconds: float, frame_rate: int) -> int:
    """Number of frames needed to hold ``duration_seconds`` at ``frame_rate``."""
    return max(1, _round_half_up(duration_seconds * frame_rate))


class TrailSettings(NamedTuple):
    duration_seconds: float
    slice_count: int
    frame_rate: int

    @property
    def capacity(self) -> int:
        return capacity_for_duration(self.duration_seconds, self.frame_rate)


class TrailConfig:
    """Trail settings written by UI controls and read once per tick.

    Each setter clamps its value to the control range and assigns a single
    attribute, so a tick never sees a half-applied update.
    """

    def __init__(
        self,
        duration_seconds: float = DEFAULT_DURATION_SECONDS,
        slice_count: int = DEFAULT_SLICE_COUNT,
        frame_rate: int = ASSUMED_FRAME_RATE,
    ) -> None:
        if frame_rate <= 0:
            raise ValueError("frame_rate must be > 0")
        self.frame_rate = int(frame_rate)
        self.duration_seconds = DEFAULT_DURATION_SECONDS
        self.slice_count = DEFAULT_SLICE_COUNT
        self.set_duration(duration_seconds)
        self.set_slice_count(slice_count)

    def set_duration(self, seconds: float) -> None:
        seconds = float(seconds)
        self.duration_seconds = min(MAX_DURATION_SECONDS, max(MIN_DURATION_SECONDS, seconds))

    def set_slice_count(self, count: int) -> None:
        self.slice_count = min(MAX_SLICES, max(1, int(count)))

    @property
    def max_capacity(self) -> int:
        return capacity_for_duration(MAX_DURATION_SECONDS, self.frame_rate)

    def snapshot(self) -> TrailSettings:
        return TrailSettings(self.duration_seconds, self.slice_count, self.frame_rate)


class FrameHistory:
    """Chronological frame store backed by a preallocated ring of buffers.

    Index 0 is the oldest frame. Slots are allocated the first time they are
    written and reused afterwards; a frame with a different shape resets the
    ring.
    """

    def __init__(self, max_frames: int) -> None:
        if max_frames < 1:
            raise ValueError("max_frames must be >= 1")
        self._slots: list[np.ndarray | None] = [None] * max_frames
        self._start = 0
        self._length = 0
        self._frame_shape: tuple[int, ...] | None = None

    @property
    def max_frames(self) -> int:
        return len(self._slots)

    def __len__(self) -> int:
        return self._length

    def clear(self) -> None:
        self._start = 0
        self._length = 0

    def push(self, frame: np.ndarray) -> np.ndarray:
        if frame.shape != self._frame_shape:
            if self._frame_shape is not None:
                logger.info(
                    "Frame shape changed from %s to %s; resetting history",
                    self._frame_shape,
                    frame.shape,
                )
            self._slots = [None] * len(self._slots)
            self._frame_shape = frame.shape
            self.clear()

        if self._length == len(self._slots):
            # Arena full: the new frame takes the oldest slot.
            self._start = (self._start + 1) % len(self._slots)
            self._length -= 1

        position = (self._start + self._length) % len(self._slots)
        slot = self._slots[position]
        if slot is None:
            slot = np.empty_like(frame)
            self._slots[position] = slot
        np.copyto(slot, frame)
        self._length += 1
        return slot

    def enforce_capacity(self, capacity: int) -> None:
        while self._length > capacity:
            self._start = (self._start + 1) % len(self._slots)
            self._length -= 1

    def at(self, index: int) -> np.ndarray:
        if not 0 <= index < self._length:
            raise IndexError(f"history index {index} out of range [0, {self._length})")
        return self._slots[(self._start + index) % len(self._slots)]


def sample_indices(length: int, slice_count: int) -> list[int]:
    """Pick ``slice_count`` evenly spaced history indices, oldest first.

    The oldest frame (index 0) is always included. A history of zero or one
    frame is not sliced. Indices may repeat when ``slice_count`` approaches
    ``length``.
    """
    if length < 0:
        raise ValueError("length must be >= 0")
    if slice_count < 1:
        raise ValueError("slice_count must be >= 1")
    if length <= 1:
        return []
    if slice_count == 1:
        return [0]

    last = length - 1
    step = last / (slice_count - 1)
    indices = [0]
    for i in range(1, slice_count):
        indices.append(min(last, max(0, _round_half_up(i * step))))
    return indices


class TrailSurface:
    """Output image with a global blend weight, drawn with source-over."""

    def __init__(
        self,
        width: int,
        height: int,
        background: tuple[int, int, int] = (0, 0, 0),
    ) -> None:
        if width <= 0 or height <= 0:
            raise ValueError("surface dimensions must be > 0")
        self.background = background
        self.image = np.empty((height, width, 3), dtype=np.uint8)
        self.image[:] = background
        self._alpha = 1.0

    @property
    def resolution(self) -> tuple[int, int]:
        height, width = self.image.shape[:2]
        return width, height

    @property
    def alpha(self) -> float:
        return self._alpha

    @alpha.setter
    def alpha(self, value: float) -> None:
        if not 0.0 < value <= 1.0:
            raise ValueError("alpha must be in (0, 1]")
        self._alpha = float(value)

    def reset_alpha(self) -> None:
        self._alpha = 1.0

    def clear(self) -> None:
        self.image[:] = self.background

    def draw(self, frame: np.ndarray) -> None:
        if frame.shape != self.image.shape:
            raise ValueError(
                f"frame shape {frame.shape} does not match surface {self.image.shape}"
            )
        if self._alpha == 1.0:
            np.copyto(self.image, frame)
            return
        cv2.addWeighted(frame, self._alpha, self.image, 1.0 - self._alpha, 0.0, dst=self.image)


def composite(
    history: FrameHistory,
    indices: list[int],
    live_frame: np.ndarray,
    surface: TrailSurface,
    slice_count: int,
) -> None:
    """Draw the sampled history frames, then the live frame, at 1/(slices+1)."""
    if len(history) == 0:
        return

    surface.clear()
    surface.alpha = 1.0 / (slice_count + 1)
    try:
        for index in indices:
            surface.draw(history.at(index))
        surface.draw(live_frame)
    finally:
        surface.reset_alpha()


class CaptureSource:
    """Frame source over ``cv2.VideoCapture`` for a camera index or a video file."""

    def __init__(
        self,
        device: int | Path,
        requested_size: tuple[int, int] | None = DEFAULT_CAMERA_SIZE,
    ) -> None:
        self.device = device
        self.requested_size = requested_size
        self.finished = False
        self._cap: cv2.VideoCapture | None = None

    @property
    def is_file(self) -> bool:
        return isinstance(self.device, Path)

    def open(self) -> CaptureSource:
        target = str(self.device) if self.is_file else self.device
        cap = cv2.VideoCapture(target)
        if not cap.isOpened():
            cap.release()
            kind = "input video" if self.is_file else "camera"
            raise RuntimeError(f"Could not open {kind}: {self.device}")
        if not self.is_file and self.requested_size is not None:
            width, height = self.requested_size
            cap.set(cv2.CAP_PROP_FRAME_WIDTH, width)
            cap.set(cv2.CAP_PROP_FRAME_HEIGHT, height)
        self._cap = cap
        self.finished = False
        logger.info("Opened %s at %dx%d", self.device, *self.resolution)
        return self

    def is_ready(self) -> bool:
        return self._cap is not None and self._cap.isOpened() and not self.finished

    @property
    def resolution(self) -> tuple[int, int]:
        if self._cap is None:
            raise RuntimeError("capture source is not open")
        width = int(self._cap.get(cv2.CAP_PROP_FRAME_WIDTH))
        height = int(self._cap.get(cv2.CAP_PROP_FRAME_HEIGHT))
        return width, height

    @property
    def fps(self) -> float:
        if self._cap is None:
            return 0.0
        return float(self._cap.get(cv2.CAP_PROP_FPS))

    def capture(self, width: int, height: int) -> np.ndarray:
        if not self.is_ready():
            raise SourceUnavailable(f"{self.device} is not ready")
        ok, frame = self._cap.read()
        if not ok or frame is None:
            if self.is_file:
                self.finished = True
            raise SourceUnavailable(f"No frame available from {self.device}")
        if frame.shape[1] != width or frame.shape[0] != height:
            frame = cv2.resize(frame, (width, height), interpolation=cv2.INTER_AREA)
        return frame

    def release(self) -> None:
        if self._cap is not None:
            self._cap.release()
            self._cap = None

    def __enter__(self) -> CaptureSource:
        return self.open()

    def __exit__(self, *exc_info: object) -> None:
        self.release()


class TrailRenderer:
    """Per-tick driver: capture, buffer, sample and composite.

    The renderer stays idle until the host calls :meth:`ready`. Each tick runs
    to completion; :meth:`start` hands the next tick to a host scheduler.
    """

    IDLE = "idle"
    RUNNING = "running"

    def __init__(
        self,
        source,
        surface: TrailSurface,
        config: TrailConfig | None = None,
        on_frame: Callable[[np.ndarray], None] | None = None,
        on_source_unavailable: Callable[[SourceUnavailable], None] | None = None,
    ) -> None:
        self.source = source
        self.surface = surface
        self.config = config if config is not None else TrailConfig()
        self.history = FrameHistory(self.config.max_capacity)
        self.on_frame = on_frame
        self.on_source_unavailable = on_source_unavailable
        self.state = self.IDLE
        self.ticks = 0
        self.skipped_ticks = 0
        self._schedule: Callable[[Callable[[], None]], object] | None = None

    def ready(self) -> None:
        if self.state == self.RUNNING:
            return
        self.state = self.RUNNING
        width, height = self.surface.resolution
        logger.info("Trail renderer running at %dx%d", width, height)

    def tick(self) -> bool:
        if self.state != self.RUNNING:
            return False
        self.ticks += 1

        settings = self.config.snapshot()
        capacity = settings.capacity
        width, height = self.surface.resolution
        try:
            live_frame = self.source.capture(width, height)
        except SourceUnavailable as exc:
            self.skipped_ticks += 1
            logger.debug("Skipping tick %d: %s", self.ticks, exc)
            if self.on_source_unavailable is not None:
                self.on_source_unavailable(exc)
            return False

        self.history.push(live_frame)
        self.history.enforce_capacity(capacity)

        indices = sample_indices(len(self.history), settings.slice_count)
        composite(self.history, indices, live_frame, self.surface, settings.slice_count)
        if self.on_frame is not None:
            self.on_frame(self.surface.image)
        return True

    def start(self, schedule: Callable[[Callable[[], None]], object]) -> None:
        """Register ticks with ``schedule``, which runs a callback at the next refresh."""
        self._schedule = schedule
        schedule(self._run_scheduled_tick)

    def _run_scheduled_tick(self) -> None:
        try:
            self.tick()
        except Exception:
            self.skipped_ticks += 1
            logger.exception("Tick %d failed", self.ticks)
        finally:
            if self._schedule is not None:
                self._schedule(self._run_scheduled_tick)

    def stop(self) -> None:
        self._schedule = None


class _AsyncVideoWritePool:
    def __init__(
        self,
        writer: cv2.VideoWriter,
        frame_shape: tuple[int, int, int],
        pool_size: int = 4,
    ) -> None:
        if pool_size < 2:
            raise ValueError("pool_size must be >= 2")
        self.writer = writer
        self.buffers = [np.empty(frame_shape, dtype=np.uint8) for _ in range(pool_size)]
        self.free_indices: queue.Queue[int] = queue.Queue()
        self.ready_indices: queue.Queue[int | None] = queue.Queue()
        for i in range(pool_size):
            self.free_indices.put(i)

        self.worker_error: Exception | None = None
        self.worker = threading.Thread(target=self._worker_loop, daemon=True)
        self.worker.start()

    def _worker_loop(self) -> None:
        try:
            while True:
                index = self.ready_indices.get()
                if index is None:
                    break
                self.writer.write(self.buffers[index])
                self.free_indices.put(index)
        except Exception as exc:  # pragma: no cover - protective fallback
            self.worker_error = exc

    def write(self, frame: np.ndarray) -> None:
        """Copy ``frame`` into a free buffer and queue it for the writer thread."""
        while True:
            if self.worker_error is not None:
                raise RuntimeError("Async writer worker failed") from self.worker_error
            try:
                index = self.free_indices.get(timeout=0.1)
                break
            except queue.Empty:
                continue
        np.copyto(self.buffers[index], frame)
        self.ready_indices.put(index)

    def close(self) -> None:
        if self.worker.is_alive():
            self.ready_indices.put(None)
            self.worker.join()
        if self.worker_error is not None:
            raise RuntimeError("Async writer worker failed") from self.worker_error


class TrailRecorder:
    """Writes composited frames to a video file off the tick path."""

    def __init__(self, path: Path, size: tuple[int, int], fps: float, codec: str = "mp4v") -> None:
        self.path = path
        width, height = size
        path.parent.mkdir(parents=True, exist_ok=True)
        fourcc = cv2.VideoWriter_fourcc(*codec)
        self.writer = cv2.VideoWriter(str(path), fourcc, fps, (width, height))
        if not self.writer.isOpened():
            raise RuntimeError(f"Could not open output video writer: {path} (codec={codec})")
        self.pool = _AsyncVideoWritePool(self.writer, frame_shape=(height, width, 3))
        self.frames = 0

    def write(self, frame: np.ndarray) -> None:
        self.pool.write(frame)
        self.frames += 1

    def close(self) -> None:
        try:
            self.pool.close()
        finally:
            self.writer.release()


def _duration_float(value: str | float) -> float:
    try:
        parsed = float(value)
    except (TypeError, ValueError) as exc:
        raise argparse.ArgumentTypeError("duration must be a number") from exc
    if not MIN_DURATION_SECONDS <= parsed <= MAX_DURATION_SECONDS:
        raise argparse.ArgumentTypeError(
            f"duration must be between {MIN_DURATION_SECONDS:g} and {MAX_DURATION_SECONDS:g}"
        )
    return parsed


def _slice_count_int(value: str | int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise argparse.ArgumentTypeError("slices must be an integer") from exc
    if not 1 <= parsed <= MAX_SLICES:
        raise argparse.ArgumentTypeError(f"slices must be between 1 and {MAX_SLICES}")
    return parsed


def _positive_int(value: str | int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise argparse.ArgumentTypeError("value must be an integer") from exc
    if parsed <= 0:
        raise argparse.ArgumentTypeError("value must be > 0")
    return parsed


def _non_negative_int(value: str | int) -> int:
    try:
        parsed = int(value)
    except (TypeError, ValueError) as exc:
        raise argparse.ArgumentTypeError("value must be an integer") from exc
    if parsed < 0:
        raise argparse.ArgumentTypeError("value must be >= 0")
    return parsed


def default_output_directory() -> Path:
    desktop = Path.home() / "Desktop"
    if desktop.exists() and desktop.is_dir():
        return desktop
    return Path.home()


def build_default_output_path(input_path: Path, duration_seconds: float, slice_count: int) -> Path:
    return default_output_directory() / (
        f"{input_path.stem}_trail_d{duration_seconds:g}_s{slice_count}.mp4"
    )


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        description=(
            "Render a motion trail by blending evenly spaced frames from the last "
            "few seconds under the live frame."
        )
    )
    parser.add_argument(
        "input",
        nargs="?",
        type=Path,
        default=None,
        help="Input video path. If omitted, the camera is used.",
    )
    parser.add_argument(
        "--camera",
        type=_non_negative_int,
        default=0,
        help="Camera index when no input video is given (default: 0).",
    )
    parser.add_argument(
        "--duration",
        type=_duration_float,
        default=DEFAULT_DURATION_SECONDS,
        help=(
            "Trail length in seconds. "
            f"Range: {MIN_DURATION_SECONDS:g} to {MAX_DURATION_SECONDS:g}."
        ),
    )
    parser.add_argument(
        "--slices",
        type=_slice_count_int,
        default=DEFAULT_SLICE_COUNT,
        help=f"Number of past frames blended under the live frame. Range: 1 to {MAX_SLICES}.",
    )
    parser.add_argument(
        "--frame-rate",
        type=_positive_int,
        default=None,
        help=(
            "Frame rate used to size the history from --duration "
            f"(default: input FPS for videos, {ASSUMED_FRAME_RATE} for cameras)."
        ),
    )
    parser.add_argument(
        "--width",
        type=_positive_int,
        default=DEFAULT_CAMERA_SIZE[0],
        help="Requested camera width.",
    )
    parser.add_argument(
        "--height",
        type=_positive_int,
        default=DEFAULT_CAMERA_SIZE[1],
        help="Requested camera height.",
    )
    parser.add_argument(
        "--output",
        type=Path,
        default=None,
        help=(
            "Record the composited frames to this path. For an input video it is "
            "auto-generated from the input name and settings when omitted."
        ),
    )
    parser.add_argument(
        "--codec",
        default="mp4v",
        help="FourCC codec, e.g. mp4v, avc1, XVID.",
    )
    parser.add_argument(
        "--no-preview",
        action="store_true",
        help="Render an input video without opening a preview window.",
    )
    parser.add_argument(
        "--verbose",
        action="store_true",
        help="Log skipped ticks and other debug output.",
    )
    args = parser.parse_args(argv)
    if args.no_preview and args.input is None:
        parser.error("--no-preview requires an input video")
    return args


def _resolve_frame_rate(requested: int | None, source: CaptureSource) -> int:
    if requested is not None:
        return requested
    if source.is_file and source.fps > 0:
        return max(1, _round_half_up(source.fps))
    return ASSUMED_FRAME_RATE


def _install_trackbars(config: TrailConfig) -> None:
    cv2.namedWindow(WINDOW_NAME, cv2.WINDOW_NORMAL)
    cv2.createTrackbar(
        "Duration x0.1s",
        WINDOW_NAME,
        _round_half_up(config.duration_seconds * 10),
        _round_half_up(MAX_DURATION_SECONDS * 10),
        lambda pos: config.set_duration(pos / 10.0),
    )
    cv2.setTrackbarMin("Duration x0.1s", WINDOW_NAME, _round_half_up(MIN_DURATION_SECONDS * 10))
    cv2.createTrackbar(
        "Slices",
        WINDOW_NAME,
        config.slice_count,
        MAX_SLICES,
        config.set_slice_count,
    )
    cv2.setTrackbarMin("Slices", WINDOW_NAME, 1)


def run(args: argparse.Namespace) -> int:
    """Run the trail until the input ends or the preview window is closed.

    Returns the number of composited frames.
    """
    device = args.input if args.input is not None else args.camera
    source = CaptureSource(device, requested_size=(args.width, args.height))
    source.open()

    recorder = None
    try:
        frame_rate = _resolve_frame_rate(args.frame_rate, source)
        config = TrailConfig(args.duration, args.slices, frame_rate)
        width, height = source.resolution
        if width <= 0 or height <= 0:
            raise RuntimeError("Could not read video dimensions")
        surface = TrailSurface(width, height)

        if args.output is None and source.is_file:
            args.output = build_default_output_path(
                source.device, config.duration_seconds, config.slice_count
            )
        if args.output is not None:
            record_fps = source.fps if source.fps > 0 else frame_rate
            recorder = TrailRecorder(args.output, (width, height), record_fps, args.codec)

        composited = 0

        def on_frame(image: np.ndarray) -> None:
            nonlocal composited
            composited += 1
            if recorder is not None:
                recorder.write(image)

        renderer = TrailRenderer(source, surface, config, on_frame=on_frame)
        preview = not args.no_preview
        if preview:
            _install_trackbars(config)
            print("Press ESC or q to quit.")

        pending: list[Callable[[], None]] = []
        renderer.ready()
        renderer.start(pending.append)
        while pending:
            callback = pending.pop()
            callback()
            if source.finished:
                break
            if preview:
                cv2.imshow(WINDOW_NAME, surface.image)
                key = cv2.waitKey(1) & 0xFF
                if key in (27, ord("q")):
                    break
        renderer.stop()
        logger.info(
            "Stopped after %d ticks (%d skipped)", renderer.ticks, renderer.skipped_ticks
        )
        return composited
    finally:
        if recorder is not None:
            recorder.close()
        source.release()
        if not args.no_preview:
            cv2.destroyAllWindows()


def main() -> None:
    args = parse_args()
    logging.basicConfig(
        level=logging.DEBUG if args.verbose else logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )
    frames = run(args)
    if args.output is not None:
        print(f"Wrote {frames} frames to {args.output}")
    else:
        print(f"Rendered {frames} frames")


if __name__ == "__main__":
    main()

#!/usr/bin/env python3
"""Desktop UI for motion_trail.py."""

from __future__ import annotations

import logging
import tkinter as tk
from tkinter import messagebox, ttk

import cv2
import numpy as np
from PIL import Image, ImageTk

from motion_trail import (
    DEFAULT_DURATION_SECONDS,
    DEFAULT_SLICE_COUNT,
    MAX_DURATION_SECONDS,
    MAX_SLICES,
    MIN_DURATION_SECONDS,
    CaptureSource,
    SourceUnavailable,
    TrailConfig,
    TrailRenderer,
    TrailSurface,
)

REFRESH_MS = 16
STATUS_EVERY_TICKS = 30

logger = logging.getLogger(__name__)


def fit_size(frame_size: tuple[int, int], box_size: tuple[int, int]) -> tuple[int, int]:
    """Largest size with the frame's aspect ratio that fits inside ``box_size``."""
    frame_w, frame_h = frame_size
    box_w, box_h = box_size
    if frame_w <= 0 or frame_h <= 0 or box_w <= 1 or box_h <= 1:
        return frame_w, frame_h
    scale = min(box_w / frame_w, box_h / frame_h)
    return max(1, int(frame_w * scale)), max(1, int(frame_h * scale))


class MotionTrailUI:
    def __init__(self, root: tk.Tk) -> None:
        self.root = root
        self.root.title("Motion Trail")
        self.root.geometry("1024x720")

        self.config = TrailConfig()
        self.source: CaptureSource | None = None
        self.renderer: TrailRenderer | None = None
        self._after_id: str | None = None
        self._photo: ImageTk.PhotoImage | None = None

        self.camera_var = tk.StringVar(value="0")
        self.duration_var = tk.DoubleVar(value=DEFAULT_DURATION_SECONDS)
        self.slices_var = tk.DoubleVar(value=DEFAULT_SLICE_COUNT)
        self.duration_label_var = tk.StringVar()
        self.slices_label_var = tk.StringVar()
        self.status_var = tk.StringVar(value="Idle")

        self._build_ui()
        self._on_duration_changed()
        self._on_slices_changed()
        self.root.protocol("WM_DELETE_WINDOW", self._on_close)

    @staticmethod
    def _validate_camera_input(proposed: str) -> bool:
        return proposed == "" or proposed.isdigit()

    def _build_ui(self) -> None:
        container = ttk.Frame(self.root, padding=12)
        container.pack(fill=tk.BOTH, expand=True)

        validate_camera_cmd = (self.root.register(self._validate_camera_input), "%P")

        controls = ttk.LabelFrame(container, text="Trail", padding=10)
        controls.pack(fill=tk.X, pady=(0, 10))

        ttk.Label(controls, text="Camera").grid(row=0, column=0, sticky="w")
        ttk.Entry(
            controls,
            textvariable=self.camera_var,
            width=6,
            validate="key",
            validatecommand=validate_camera_cmd,
        ).grid(row=0, column=1, sticky="w", padx=(8, 20))
        self.start_button = ttk.Button(controls, text="Start", command=self._start_clicked)
        self.start_button.grid(row=0, column=2, sticky="w")
        self.stop_button = ttk.Button(
            controls, text="Stop", command=self._stop_clicked, state="disabled"
        )
        self.stop_button.grid(row=0, column=3, sticky="w", padx=(8, 0))

        ttk.Label(controls, text="Duration").grid(row=1, column=0, sticky="w", pady=(8, 0))
        ttk.Scale(
            controls,
            from_=MIN_DURATION_SECONDS,
            to=MAX_DURATION_SECONDS,
            variable=self.duration_var,
            command=self._on_duration_changed,
            length=320,
        ).grid(row=1, column=1, columnspan=3, sticky="we", padx=(8, 8), pady=(8, 0))
        ttk.Label(controls, textvariable=self.duration_label_var, width=8).grid(
            row=1, column=4, sticky="w", pady=(8, 0)
        )

        ttk.Label(controls, text="Slices").grid(row=2, column=0, sticky="w", pady=(8, 0))
        ttk.Scale(
            controls,
            from_=1,
            to=MAX_SLICES,
            variable=self.slices_var,
            command=self._on_slices_changed,
            length=320,
        ).grid(row=2, column=1, columnspan=3, sticky="we", padx=(8, 8), pady=(8, 0))
        ttk.Label(controls, textvariable=self.slices_label_var, width=8).grid(
            row=2, column=4, sticky="w", pady=(8, 0)
        )
        controls.columnconfigure(1, weight=1)

        self.canvas = tk.Canvas(container, bg="black", highlightthickness=0)
        self.canvas.pack(fill=tk.BOTH, expand=True)

        ttk.Label(container, textvariable=self.status_var).pack(fill=tk.X, pady=(8, 0))

    def _on_duration_changed(self, *_: object) -> None:
        self.config.set_duration(self.duration_var.get())
        self.duration_label_var.set(f"{self.config.duration_seconds:.1f} s")

    def _on_slices_changed(self, *_: object) -> None:
        self.config.set_slice_count(round(self.slices_var.get()))
        self.slices_label_var.set(str(self.config.slice_count))

    def _start_clicked(self) -> None:
        if self.renderer is not None:
            return
        camera = int(self.camera_var.get() or "0")
        source = CaptureSource(camera)
        try:
            source.open()
        except RuntimeError as exc:
            messagebox.showerror(
                "Camera error",
                f"{exc}\nCheck that the camera is connected and not used by another program.",
            )
            return

        width, height = source.resolution
        if width <= 0 or height <= 0:
            source.release()
            messagebox.showerror(
                "Camera error",
                f"Could not read the resolution of camera {camera}.",
            )
            return
        self.source = source
        self.renderer = TrailRenderer(
            source,
            TrailSurface(width, height),
            self.config,
            on_frame=self._show_frame,
            on_source_unavailable=self._on_source_unavailable,
        )
        self.renderer.ready()
        self.renderer.start(self._schedule_tick)
        self.start_button.configure(state="disabled")
        self.stop_button.configure(state="normal")
        self.status_var.set(f"Running at {width}x{height}")

    def _schedule_tick(self, callback) -> None:
        self._after_id = self.root.after(REFRESH_MS, callback)

    def _stop_clicked(self) -> None:
        if self.renderer is None:
            return
        self.renderer.stop()
        if self._after_id is not None:
            self.root.after_cancel(self._after_id)
            self._after_id = None
        logger.info(
            "Stopped after %d ticks (%d skipped)",
            self.renderer.ticks,
            self.renderer.skipped_ticks,
        )
        self.renderer = None
        if self.source is not None:
            self.source.release()
            self.source = None
        self.start_button.configure(state="normal")
        self.stop_button.configure(state="disabled")
        self.status_var.set("Stopped")

    def _show_frame(self, image: np.ndarray) -> None:
        height, width = image.shape[:2]
        box = (self.canvas.winfo_width(), self.canvas.winfo_height())
        preview = Image.fromarray(cv2.cvtColor(image, cv2.COLOR_BGR2RGB))
        size = fit_size((width, height), box)
        if size != preview.size:
            preview = preview.resize(size, Image.Resampling.BILINEAR)

        self._photo = ImageTk.PhotoImage(preview, master=self.root)
        self.canvas.delete("all")
        self.canvas.create_image(box[0] // 2, box[1] // 2, anchor="center", image=self._photo)

        renderer = self.renderer
        if renderer is not None and renderer.ticks % STATUS_EVERY_TICKS == 0:
            self.status_var.set(
                f"Running at {width}x{height} | history {len(renderer.history)} frames"
                f" | skipped {renderer.skipped_ticks}"
            )

    def _on_source_unavailable(self, exc: SourceUnavailable) -> None:
        self.status_var.set(f"Waiting for camera: {exc}")

    def _on_close(self) -> None:
        self._stop_clicked()
        self.root.destroy()


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(name)s %(levelname)s: %(message)s",
    )
    root = tk.Tk()
    MotionTrailUI(root)
    root.mainloop()


if __name__ == "__main__":
    main()

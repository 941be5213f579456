import unittest
from unittest import mock

from motion_trail import TrailConfig

try:
    import ui
except ImportError:  # pragma: no cover - Python built without Tk
    ui = None


@unittest.skipIf(ui is None, "tkinter is not available")
class MotionTrailUITests(unittest.TestCase):
    def _bare_ui(self):
        window = ui.MotionTrailUI.__new__(ui.MotionTrailUI)
        window.config = TrailConfig()
        window.source = None
        window.renderer = None
        window.camera_var = mock.Mock(get=mock.Mock(return_value="2"))
        window.start_button = mock.Mock()
        window.stop_button = mock.Mock()
        window.status_var = mock.Mock()
        return window

    def test_start_rejects_camera_without_resolution(self) -> None:
        window = self._bare_ui()
        source = mock.Mock(resolution=(0, 0))
        with mock.patch("ui.CaptureSource", return_value=source) as source_cls:
            with mock.patch("ui.messagebox") as messagebox:
                window._start_clicked()
        source_cls.assert_called_once_with(2)
        source.open.assert_called_once()
        source.release.assert_called_once()
        messagebox.showerror.assert_called_once()
        self.assertIsNone(window.source)
        self.assertIsNone(window.renderer)
        window.start_button.configure.assert_not_called()

    def test_start_reports_camera_open_failure(self) -> None:
        window = self._bare_ui()
        source = mock.Mock()
        source.open.side_effect = RuntimeError("Could not open camera: 2")
        with mock.patch("ui.CaptureSource", return_value=source):
            with mock.patch("ui.messagebox") as messagebox:
                window._start_clicked()
        messagebox.showerror.assert_called_once()
        self.assertIsNone(window.renderer)


class FitSizeTests(unittest.TestCase):
    @unittest.skipIf(ui is None, "tkinter is not available")
    def test_keeps_aspect_ratio_inside_box(self) -> None:
        self.assertEqual(ui.fit_size((1920, 1080), (960, 720)), (960, 540))
        self.assertEqual(ui.fit_size((640, 480), (1, 1)), (640, 480))


if __name__ == "__main__":
    unittest.main()

"""
Calibration run orchestration.

CalibrationRunner drives the per-image loop, picks the workflow by mode and
calls the solvers. Sequential and single-threaded: the only waits are the
next frame and the operator's quit key, checked once per iteration.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Iterable, Iterator

import cv2
import numpy as np

from .calibration.intrinsic import calibrate_intrinsics, intrinsics_look_valid, undistort_image
from .calibration.patterns import build_pattern
from .calibration.reconcile import reconcile_views
from .calibration.stereo import (
    draw_rectified_pair,
    rectification_maps,
    rectify,
    remap_image,
    stereo_calibrate,
)
from .config import save_calibration_result
from .errors import PersistenceError, SolverError
from .prior import NoPrior, load_prior
from .settings import Settings
from .types import (
    CalibrationResult,
    CalibrationSession,
    CameraIntrinsics,
    Mode,
    PatternType,
    PointPacket,
    View,
)


logger = logging.getLogger(__name__)

WINDOW_NAME = "calibox"
QUIT_KEYS = {ord("q"), ord("Q"), 27}  # 27 = ESC
UNDISTORT_KEY = ord("u")
COORDINATES_KEY = ord("c")

# (window, image, wait_ms) -> pressed key code or -1
Display = Callable[[str, np.ndarray, int], int]
ImageLoader = Callable[[Path], "np.ndarray | None"]
ImageWriter = Callable[[Path, np.ndarray], bool]


class RunState(str, Enum):
    AWAITING_IMAGE = "awaiting_image"
    DETECTING = "detecting"
    ACCUMULATING = "accumulating"
    DONE_INTRINSIC = "done_intrinsic"
    DONE_STEREO = "done_stereo"
    PREVIEW_LOOP = "preview_loop"
    TERMINATED = "terminated"


# ============================================================================
# Collaborators
# ============================================================================


def read_image(path: Path) -> np.ndarray | None:
    """Read an image file; None if it cannot be decoded."""
    return cv2.imread(str(path), cv2.IMREAD_COLOR)


def write_image(path: Path, image: np.ndarray) -> bool:
    return bool(cv2.imwrite(str(path), image))


def show_image(window: str, image: np.ndarray, wait_ms: int) -> int:
    """Show an image and wait up to wait_ms (0 = until a key is pressed)."""
    cv2.imshow(window, image)
    key = cv2.waitKey(wait_ms)
    return key & 0xFF if key >= 0 else -1


def ensure_directory(directory: Path | None) -> Path | None:
    """Create an output directory; None if unset or it cannot be created."""
    if directory is None:
        return None
    try:
        directory.mkdir(parents=True, exist_ok=True)
    except OSError as e:
        logger.error(f"Could not create {directory}: {e}")
        return None
    return directory


def camera_frames(camera: int) -> Iterator[np.ndarray]:
    """Yield frames from a capture device until it stops delivering."""
    capture = cv2.VideoCapture(camera)
    if not capture.isOpened():
        logger.error(f"Could not open camera {camera}")
        return
    try:
        while True:
            ok, frame = capture.read()
            if not ok:
                logger.warning(f"Camera {camera} stopped delivering frames")
                return
            yield frame
    finally:
        capture.release()


# ============================================================================
# Image interleaving
# ============================================================================


@dataclass
class ViewCursor:
    """
    Tracks which pair and which camera the next image belongs to.

    STEREO images alternate left, right, left, right...; every other mode
    uses the left view only and advances the pair on every image.
    """

    stereo: bool
    pair_index: int = 0
    view: View = View.LEFT

    def advance(self) -> None:
        if self.stereo and self.view is View.LEFT:
            self.view = View.RIGHT
            return
        self.view = View.LEFT
        self.pair_index += 1


# ============================================================================
# Runner
# ============================================================================


class CalibrationRunner:
    """
    Runs one calibration session.

    All collaborators are injectable so the loop can be driven without
    cameras, windows or the OpenCV solvers.
    """

    def __init__(
        self,
        settings: Settings,
        pattern,
        prior=None,
        load_image: ImageLoader = read_image,
        display: Display = show_image,
        intrinsic_solver=calibrate_intrinsics,
        stereo_solver=stereo_calibrate,
        rectifier=rectify,
        save_image: ImageWriter = write_image,
    ):
        self.settings = settings
        self.pattern = pattern
        self.prior = prior if prior is not None else NoPrior()
        self.load_image = load_image
        self.display = display
        self.intrinsic_solver = intrinsic_solver
        self.stereo_solver = stereo_solver
        self.rectifier = rectifier
        self.save_image = save_image

        self.state = RunState.AWAITING_IMAGE
        self.session = CalibrationSession(settings.mode, settings.pattern_type)

    # ------------------------------------------------------------------
    # Main loop
    # ------------------------------------------------------------------

    def run(self) -> CalibrationResult:
        """Process every configured image, then finalize by mode."""
        if self.settings.mode is Mode.PREVIEW:
            return self.preview()

        cursor = ViewCursor(stereo=self.settings.mode is Mode.STEREO)
        total = len(self.settings.images)
        detected_dir = ensure_directory(self.settings.detected_dir)

        for number, path in enumerate(self.settings.images, start=1):
            self.state = RunState.AWAITING_IMAGE
            image = self.load_image(path)

            if image is None or not self._matches_size(image, path):
                if image is None:
                    logger.warning(f"[{number}/{total}] Could not read {path}, skipping")
                self.session.record(cursor.view, cursor.pair_index, PointPacket())
                cursor.advance()
                continue

            self.state = RunState.DETECTING
            packet = self.pattern.detect(image)

            self.state = RunState.ACCUMULATING
            self.session.record(cursor.view, cursor.pair_index, packet)
            if packet.is_empty:
                logger.info(f"[{number}/{total}] No pattern found in {path}")
            else:
                logger.debug(f"[{number}/{total}] {len(packet)} correspondences in {path}")

            if self.settings.show_detections or detected_dir is not None:
                annotated = self.pattern.annotate(image, packet)
            if detected_dir is not None:
                target = detected_dir / f"detected_{number - 1}.jpg"
                if not self.save_image(target, annotated):
                    logger.warning(f"Could not write {target}")
            if self.settings.show_detections:
                key = self.display(WINDOW_NAME, annotated, self.settings.review_wait_ms)
                if key in QUIT_KEYS:
                    return self._abort()

            cursor.advance()

        result = self.finalize()
        if result.success and self.settings.export.enabled:
            self.export(result)
        return result

    def _matches_size(self, image: np.ndarray, path: Path) -> bool:
        size = (int(image.shape[1]), int(image.shape[0]))
        if self.session.image_size is None:
            self.session.image_size = size
            return True
        if size != self.session.image_size:
            logger.warning(
                f"{path} is {size[0]}x{size[1]}, expected "
                f"{self.session.image_size[0]}x{self.session.image_size[1]}; skipping"
            )
            return False
        return True

    def _abort(self) -> CalibrationResult:
        self.state = RunState.TERMINATED
        logger.info("Run aborted by operator")
        result = CalibrationResult(
            success=False,
            mode=self.settings.mode,
            detection_misses=self.session.detection_misses,
            message="aborted by operator",
        )
        self.session.result = result
        return result

    # ------------------------------------------------------------------
    # Preview
    # ------------------------------------------------------------------

    def preview(self, frames: Iterable[np.ndarray] | None = None) -> CalibrationResult:
        """
        Detect, undistort and show frames until quit or the source runs dry.

        Nothing is accumulated: each frame's correspondences are dropped
        once it has been displayed. While running, `u` toggles undistortion
        (needs an intrinsic estimate) and `c` toggles marker coordinate
        labels.
        """
        if frames is None:
            frames = self._preview_frames()

        undistort = self.settings.preview.undistort and self.prior.available
        wait_ms = self.settings.preview.poll_ms if not self.settings.images else 0

        self.state = RunState.PREVIEW_LOOP
        shown = 0
        for frame in frames:
            packet = self.pattern.detect(frame)
            canvas = self.pattern.annotate(frame, packet)
            if undistort:
                canvas = self.prior.undistort(canvas)

            shown += 1
            key = self.display(WINDOW_NAME, canvas, wait_ms)
            if key in QUIT_KEYS:
                break
            if key == UNDISTORT_KEY:
                if self.prior.available:
                    undistort = not undistort
                else:
                    logger.warning("Undistorted preview requires an intrinsic estimate")
            elif key == COORDINATES_KEY and hasattr(self.pattern, "show_coordinates"):
                self.pattern.show_coordinates = not self.pattern.show_coordinates

        self.state = RunState.TERMINATED
        logger.info(f"Preview finished after {shown} frame(s)")
        return CalibrationResult(success=True, mode=Mode.PREVIEW, images_used=shown)

    def _preview_frames(self) -> Iterator[np.ndarray]:
        if not self.settings.images:
            return camera_frames(self.settings.preview.camera)
        return (
            image
            for image in (self.load_image(p) for p in self.settings.images)
            if image is not None
        )

    # ------------------------------------------------------------------
    # Finalization
    # ------------------------------------------------------------------

    def finalize(self) -> CalibrationResult:
        if self.settings.mode is Mode.STEREO:
            result = self._finalize_stereo()
            self.state = RunState.DONE_STEREO
        else:
            result = self._finalize_intrinsic()
            self.state = RunState.DONE_INTRINSIC

        self.session.result = result
        if result.success:
            logger.info(f"Calibration succeeded, RMS reprojection error {result.error:.4f} px")
        else:
            logger.error(f"Calibration failed: {result.message}")
        return result

    def _usable(self, packets: list[PointPacket]) -> tuple[list[np.ndarray], list[np.ndarray]]:
        obj = []
        img = []
        for packet in packets:
            if len(packet) < self.settings.min_points:
                continue
            obj.append(self.pattern.to_solver(packet.obj_loc))
            img.append(np.asarray(packet.img_loc, dtype=np.float32))
        return obj, img

    def _failure(self, message: str, **diagnostics) -> CalibrationResult:
        return CalibrationResult(
            success=False,
            mode=self.settings.mode,
            detection_misses=self.session.detection_misses,
            points_dropped=self.session.points_dropped,
            message=message,
            **diagnostics,
        )

    def _calibrate_view(self, view: View) -> CameraIntrinsics | str:
        """Calibrate one camera; returns a failure message instead of raising."""
        obj, img = self._usable(self.session.views[view])
        if not obj or self.session.image_size is None:
            return f"no {view.name.lower()} image has {self.settings.min_points}+ correspondences"

        logger.info(f"Calibrating {view.name.lower()} camera from {len(obj)} image(s)")
        try:
            return self.intrinsic_solver(
                obj,
                img,
                self.session.image_size,
                flags=self.settings.flags,
                aspect_ratio=self.settings.solver.aspect_ratio,
                **self.prior.solver_guess(view),
            )
        except SolverError as e:
            return str(e)

    def _finalize_intrinsic(self) -> CalibrationResult:
        intrinsics = self._calibrate_view(View.LEFT)
        if isinstance(intrinsics, str):
            return self._failure(intrinsics)

        success = intrinsics_look_valid(intrinsics)
        return CalibrationResult(
            success=success,
            mode=Mode.INTRINSIC,
            intrinsics={View.LEFT: intrinsics},
            per_view_errors=intrinsics.per_view_errors,
            images_used=intrinsics.view_count,
            detection_misses=self.session.detection_misses,
            message="" if success else "solver output failed the sanity check",
        )

    def _finalize_stereo(self) -> CalibrationResult:
        left = self.session.views[View.LEFT]
        right = self.session.views[View.RIGHT]

        if self.settings.pattern_type is not PatternType.CHESSBOARD:
            reconciled = reconcile_views(left, right)
            left, right = reconciled.left, reconciled.right
            self.session.points_dropped = reconciled.dropped
            if reconciled.dropped:
                logger.warning(
                    f"{reconciled.dropped} correspondence(s) seen by only one camera were "
                    f"dropped; check that shared corners are authored identically"
                )

        # Per-camera intrinsics
        if self.prior.available and self.settings.solver.fix_intrinsic:
            intrinsics = {view: self.prior.intrinsics(view) for view in View}
        else:
            intrinsics = {}
            for view in View:
                calibrated = self._calibrate_view(view)
                if isinstance(calibrated, str):
                    return self._failure(calibrated, intrinsics=intrinsics)
                intrinsics[view] = calibrated
                if not intrinsics_look_valid(calibrated):
                    return self._failure(
                        f"{view.name.lower()} intrinsics failed the sanity check",
                        intrinsics=intrinsics,
                    )

        # Matched pairs
        obj, img_left, img_right = [], [], []
        for packet_left, packet_right in zip(left, right):
            if min(len(packet_left), len(packet_right)) < self.settings.min_points:
                continue
            obj.append(self.pattern.to_solver(packet_left.obj_loc))
            img_left.append(np.asarray(packet_left.img_loc, dtype=np.float32))
            img_right.append(np.asarray(packet_right.img_loc, dtype=np.float32))

        if not obj:
            return self._failure("no image pair shares enough correspondences", intrinsics=intrinsics)

        logger.info(f"Stereo calibrating from {len(obj)} image pair(s)")
        try:
            extrinsics = self.stereo_solver(
                obj,
                img_left,
                img_right,
                intrinsics[View.LEFT],
                intrinsics[View.RIGHT],
                self.session.image_size,
            )
            rectification = self.rectifier(
                intrinsics[View.LEFT],
                intrinsics[View.RIGHT],
                extrinsics,
                self.session.image_size,
            )
        except SolverError as e:
            return self._failure(str(e), intrinsics=intrinsics)

        return CalibrationResult(
            success=True,
            mode=Mode.STEREO,
            intrinsics=intrinsics,
            extrinsics=extrinsics,
            rectification=rectification,
            per_view_errors=intrinsics[View.LEFT].per_view_errors,
            images_used=len(obj),
            detection_misses=self.session.detection_misses,
            points_dropped=self.session.points_dropped,
        )

    # ------------------------------------------------------------------
    # Corrected images
    # ------------------------------------------------------------------

    def export(self, result: CalibrationResult) -> int:
        """
        Write and/or step through corrected copies of the input images.

        INTRINSIC runs produce undistorted images, STEREO runs rectified
        pairs. A quit key stops the walk-through and the writing.

        Returns:
            Number of image files written
        """
        export = self.settings.export
        if result.mode is Mode.STEREO:
            directory = export.rectified_dir
            corrected = self._rectified_images(result)
        else:
            directory = export.undistorted_dir
            corrected = self._undistorted_images(result)

        directory = ensure_directory(directory)
        if directory is None and not export.show:
            return 0

        written = 0
        for files, canvas in corrected:
            if directory is not None:
                for name, image in files:
                    if self.save_image(directory / name, image):
                        written += 1
                    else:
                        logger.warning(f"Could not write {directory / name}")
            if export.show:
                key = self.display(WINDOW_NAME, canvas, 0)
                if key in QUIT_KEYS:
                    break

        if directory is not None:
            logger.info(f"Wrote {written} corrected image(s) to {directory}")
        return written

    def _undistorted_images(self, result: CalibrationResult):
        intrinsics = result.intrinsics[View.LEFT]
        for index, path in enumerate(self.settings.images):
            image = self.load_image(path)
            if image is None:
                continue
            undistorted = undistort_image(image, intrinsics.matrix, intrinsics.distortion)
            yield [(f"undistorted_{index}.jpg", undistorted)], undistorted

    def _rectified_images(self, result: CalibrationResult):
        left_maps, right_maps = rectification_maps(
            result.intrinsics[View.LEFT],
            result.intrinsics[View.RIGHT],
            result.rectification,
            self.session.image_size,
        )
        images = self.settings.images
        for pair_index in range(len(images) // 2):
            left_image = self.load_image(images[2 * pair_index])
            right_image = self.load_image(images[2 * pair_index + 1])
            if left_image is None or right_image is None:
                continue

            left_rectified = remap_image(left_image, left_maps)
            right_rectified = remap_image(right_image, right_maps)
            files = [
                (f"left_rectified_{pair_index}.jpg", left_rectified),
                (f"right_rectified_{pair_index}.jpg", right_rectified),
            ]
            yield files, draw_rectified_pair(left_rectified, right_rectified, result.rectification)


# ============================================================================
# Entry point
# ============================================================================


def run_calibration(settings: Settings, **collaborators) -> CalibrationResult:
    """
    Run a complete calibration from validated settings.

    Builds the pattern (loading marker maps) and the intrinsic prior, runs
    the session and writes the result file when configured. A failed write
    is logged; the in-memory result is still returned.

    Args:
        settings: Validated settings
        **collaborators: Forwarded to CalibrationRunner

    Raises:
        ConfigurationError: If marker maps or estimate files are unusable
    """
    pattern = build_pattern(settings)
    prior = load_prior(settings)
    runner = CalibrationRunner(settings, pattern, prior=prior, **collaborators)

    result = runner.run()

    if settings.output is not None and result.success and result.mode is not Mode.PREVIEW:
        try:
            save_calibration_result(result, settings.output)
            logger.info(f"Saved calibration to {settings.output}")
        except PersistenceError as e:
            logger.error(str(e))

    return result

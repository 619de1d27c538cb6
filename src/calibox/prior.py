"""
Pre-supplied intrinsic estimate, modelled as a capability.

The orchestrator never checks for a missing matrix: it asks the prior for
solver arguments and for undistortion, and NoPrior answers with no-ops.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import ClassVar, Protocol

import numpy as np

from .calibration.intrinsic import undistort_image
from .config import load_intrinsic_estimate
from .settings import Settings
from .types import CameraIntrinsics, View


class IntrinsicPrior(Protocol):
    available: bool

    def solver_guess(self, view: View) -> dict:
        """Keyword arguments for calibrate_intrinsics."""

    def undistort(self, image: np.ndarray, view: View = View.LEFT) -> np.ndarray:
        """Undistort an image, or return it unchanged."""


class NoPrior:
    available: ClassVar[bool] = False

    def solver_guess(self, view: View) -> dict:
        return {}

    def undistort(self, image: np.ndarray, view: View = View.LEFT) -> np.ndarray:
        return image


@dataclass(frozen=True)
class KnownIntrinsics:
    """
    Intrinsic estimate per view. A missing right view reuses the left one.
    """

    cameras: dict[View, CameraIntrinsics]
    available: ClassVar[bool] = True

    def intrinsics(self, view: View) -> CameraIntrinsics:
        return self.cameras.get(view, self.cameras[View.LEFT])

    def solver_guess(self, view: View) -> dict:
        intrinsics = self.intrinsics(view)
        return {
            "initial_matrix": intrinsics.matrix,
            "initial_distortion": intrinsics.distortion,
        }

    def undistort(self, image: np.ndarray, view: View = View.LEFT) -> np.ndarray:
        intrinsics = self.intrinsics(view)
        return undistort_image(image, intrinsics.matrix, intrinsics.distortion)


def load_prior(settings: Settings) -> NoPrior | KnownIntrinsics:
    """
    Build the intrinsic prior configured in [intrinsic_estimate].

    Raises:
        ConfigurationError: If an estimate file is missing or malformed
    """
    if not settings.intrinsic_estimates:
        return NoPrior()

    cameras = {
        view: load_intrinsic_estimate(path)
        for view, path in zip(View, settings.intrinsic_estimates)
    }
    return KnownIntrinsics(cameras)

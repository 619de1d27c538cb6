#!/usr/bin/env python3
"""
calibox CLI - camera and stereo calibration from chessboards and ArUco rigs.

Usage:
    calibox run CONFIG       - Calibrate as configured (INTRINSIC / STEREO / PREVIEW)
    calibox check CONFIG     - Validate a settings file and list every problem
    calibox preview CONFIG   - Live detection preview, regardless of configured mode
"""

from __future__ import annotations

import argparse
import dataclasses
import logging
import sys
from pathlib import Path

from .config import load_settings, load_settings_data
from .errors import ConfigurationError
from .orchestrator import run_calibration
from .settings import check_settings, validate_settings
from .types import Mode


logger = logging.getLogger("calibox")


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def cmd_run(args: argparse.Namespace) -> int:
    settings = load_settings(args.config)
    if args.output is not None:
        settings = dataclasses.replace(settings, output=args.output)
    if args.review:
        settings = dataclasses.replace(settings, show_detections=True)

    result = run_calibration(settings)

    if result.mode is Mode.PREVIEW:
        return 0
    if not result.success:
        return 1

    print(f"Calibration succeeded ({result.images_used} image(s) used)")
    print(f"  RMS reprojection error: {result.error:.4f} px")
    if result.detection_misses:
        print(f"  Images without a detected pattern: {result.detection_misses}")
    if result.points_dropped:
        print(f"  Unmatched correspondences dropped: {result.points_dropped}")
    return 0


def cmd_check(args: argparse.Namespace) -> int:
    data = load_settings_data(args.config)
    issues = check_settings(data, base_dir=Path(args.config).parent)
    if not issues:
        print(f"{args.config}: OK")
        return 0

    for issue in issues:
        print(f"{args.config}: {issue.issue.value}: {issue.message}")
    return 1


def cmd_preview(args: argparse.Namespace) -> int:
    data = load_settings_data(args.config)
    data["mode"] = Mode.PREVIEW.value
    if args.camera is not None:
        data.setdefault("preview", {})["camera"] = args.camera
        data["images"] = []

    settings = validate_settings(data, base_dir=Path(args.config).parent)
    print("Keys: u toggles undistortion, c toggles marker coordinates, q or ESC quits")
    run_calibration(settings)
    return 0


def main(argv: list[str] | None = None) -> int:
    parser = argparse.ArgumentParser(
        prog="calibox",
        description="Camera intrinsic and stereo calibration",
    )
    parser.add_argument("-v", "--verbose", action="store_true",
                        help="Enable debug logging")
    subparsers = parser.add_subparsers(dest="command", required=True)

    run_parser = subparsers.add_parser("run", help="Run the configured calibration")
    run_parser.add_argument("config", type=Path, help="Settings TOML file")
    run_parser.add_argument("-o", "--output", type=Path, default=None,
                            help="Result file (overrides 'output' in the settings)")
    run_parser.add_argument("--review", action="store_true",
                            help="Show every detection and wait for a key")
    run_parser.set_defaults(func=cmd_run)

    check_parser = subparsers.add_parser("check", help="Validate a settings file")
    check_parser.add_argument("config", type=Path, help="Settings TOML file")
    check_parser.set_defaults(func=cmd_check)

    preview_parser = subparsers.add_parser("preview", help="Live detection preview")
    preview_parser.add_argument("config", type=Path, help="Settings TOML file")
    preview_parser.add_argument("-c", "--camera", type=int, default=None,
                                help="Capture device index (ignores configured images)")
    preview_parser.set_defaults(func=cmd_preview)

    args = parser.parse_args(argv)
    _configure_logging(args.verbose)

    try:
        return args.func(args)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return 2


if __name__ == "__main__":
    sys.exit(main())

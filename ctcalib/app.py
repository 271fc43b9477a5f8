#!/usr/bin/env python3
"""
ctcalib command-line entry point.

Usage:
  ctcalib <config_path>
  ctcalib <config_path> --log-level DEBUG

Runs the whole calibration: load and align data, staged optimization,
final parameter output. The exit code is 0 unless a fatal Status is reached.
"""

from __future__ import annotations

import argparse
import logging
import os
import sys
from typing import Optional, Sequence

from pydantic import ValidationError

from ctcalib.common.param_models import CalibConfig
from ctcalib.common.status import CalibUsageError, FailureCategory, Status

_logger = logging.getLogger(__name__)

_EXIT_CODES = {
    FailureCategory.NONE: 0,
    FailureCategory.CONFIGURATION: 2,
    FailureCategory.DATA: 3,
    FailureCategory.USAGE: 4,
    FailureCategory.IO: 5,
}


def load_config(config_path: str) -> tuple[Optional[CalibConfig], Status]:
    if not os.path.isfile(config_path):
        return None, Status.fatal(f"config file not found: '{config_path}'", FailureCategory.CONFIGURATION)
    try:
        return CalibConfig.from_yaml(config_path), Status.ok()
    except ValidationError as e:
        return None, Status.fatal(f"invalid config '{config_path}':\n{e}", FailureCategory.CONFIGURATION)


def run(config: CalibConfig) -> Status:
    """Data manager -> solver -> final parameters."""
    if config.preference.use_cuda_in_solving:
        # must precede the first jax import
        os.environ["JAX_PLATFORMS"] = "cuda"

    from ctcalib.calib.calib_solver import CalibSolver
    from ctcalib.calib.data_manager import CalibDataManager
    from ctcalib.calib.param_manager import CalibParamManager

    data_mgr = CalibDataManager(config)
    status = data_mgr.initialize()
    if status.is_fatal:
        return status

    param_mgr = CalibParamManager.from_config(config)
    solver = CalibSolver(config, data_mgr, param_mgr)
    try:
        status = solver.process()
        if status.is_fatal:
            return status
        try:
            os.makedirs(config.data_stream.output_path, exist_ok=True)
        except OSError as e:
            _logger.warning("create directory failed: '%s' (%s)", config.data_stream.output_path, e)
        out = os.path.join(config.data_stream.output_path, "ikalibr_param" + config.format_extension())
        param_mgr.save(out, config.preference.output_data_format)
        _logger.info("calibration results saved to '%s'", out)
        param_mgr.show_param_status()
    except CalibUsageError as e:
        return Status.fatal(str(e), FailureCategory.USAGE)
    except OSError as e:
        return Status.fatal(str(e), FailureCategory.IO)
    finally:
        solver.close()
    return status


def main(argv: Optional[Sequence[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Targetless spatiotemporal calibration of IMU/LiDAR/camera/radar suites")
    ap.add_argument("config_path", help="Path to the calibration config YAML")
    ap.add_argument("--log-level", default="INFO", choices=["DEBUG", "INFO", "WARNING", "ERROR"])
    args = ap.parse_args(argv)

    logging.basicConfig(
        level=getattr(logging, args.log_level),
        format="[%(asctime)s] [%(levelname)s] %(name)s: %(message)s",
    )

    config, status = load_config(args.config_path)
    if config is not None:
        status = run(config)

    if status.is_fatal:
        _logger.error("%s", status)
    elif not status.is_ok:
        _logger.warning("%s", status)
    else:
        _logger.info("calibration finished")
    return _EXIT_CODES[status.category] if status.is_fatal else 0


if __name__ == "__main__":
    sys.exit(main())

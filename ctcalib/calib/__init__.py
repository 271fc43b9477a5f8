"""Calibration core: data manager, trajectory splines, parameters, estimator and solver."""

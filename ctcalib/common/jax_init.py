"""
Common JAX Initialization Module.

JAX is imported once here, after the platform environment is set. Every
module that needs JAX imports it from this module so that configuration
happens exactly once.

Platform selection:
    CPU unless JAX_PLATFORMS is already set. The run loop exports
    JAX_PLATFORMS=cuda before the solver is imported when
    preference.use_cuda_in_solving is enabled.

Usage:
    from ctcalib.common.jax_init import jax, jnp
"""

from __future__ import annotations

import os

os.environ.setdefault("JAX_PLATFORMS", "cpu")
os.environ.setdefault("XLA_PYTHON_CLIENT_PREALLOCATE", "false")

import jax  # noqa: E402
import jax.numpy as jnp  # noqa: E402

# x64 is required: knot times and residuals mix 1e-3 s offsets with 1e2 s spans
jax.config.update("jax_enable_x64", True)

__all__ = ["jax", "jnp"]

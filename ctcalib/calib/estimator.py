"""
Sparse Levenberg-Marquardt estimator.

Residual blocks come in batches of one factor type (see factors.py). For each
batch the residuals and local Jacobians of all measurements are computed in
one jit-compiled jax.vmap(jax.jacfwd(fn)) call, then scattered into a global
scipy.sparse matrix through the batch's column index array. Columns marked
-1 belong to fixed parameters and are dropped.

The damped normal equations

    (J^T J + lambda * diag(J^T J)) dx = -J^T r

are solved with scipy.sparse.linalg.spsolve. Step control follows Nielsen's
rule; "trust region radius" reported to callbacks is 1 / lambda.

The estimator knows nothing about splines or sensors: a Problem supplies the
batches for the current state and applies / reverts updates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Protocol, Tuple

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg as spla

from ctcalib.common.jax_init import jax, jnp

_logger = logging.getLogger(__name__)


@dataclass
class FactorBatch:
    """M measurements of one factor type, linearized at the current state."""

    name: str
    fn: Callable  # fn(x_local, data) -> residual
    data: Dict[str, np.ndarray]  # every entry has leading dimension M
    columns: np.ndarray  # (M, local_size) int, -1 = fixed

    @property
    def size(self) -> int:
        return int(self.columns.shape[0])


class Problem(Protocol):
    def num_params(self) -> int: ...

    def build_batches(self) -> List[FactorBatch]: ...

    def apply_update(self, dx: np.ndarray) -> None: ...

    def backup(self) -> Any: ...

    def restore(self, token: Any) -> None: ...


@dataclass
class IterationSummary:
    iteration: int
    cost: float
    gradient_max_norm: float
    trust_region_radius: float
    step_accepted: bool


@dataclass
class SolverOptions:
    max_iterations: int = 30
    function_tolerance: float = 1e-6
    gradient_tolerance: float = 1e-10
    parameter_tolerance: float = 1e-8
    initial_lambda: float = 1e-4
    min_diagonal: float = 1e-6
    max_diagonal: float = 1e32


@dataclass
class SolverSummary:
    initial_cost: float
    final_cost: float
    iterations: int
    converged: bool
    message: str


IterationCallback = Callable[[IterationSummary], None]


_LINEARIZE_CACHE: Dict[Callable, Callable] = {}


def _linearizer(fn: Callable) -> Callable:
    """jit(vmap(jacfwd)) of fn at x = 0, returning (J, r) per measurement."""
    lin = _LINEARIZE_CACHE.get(fn)
    if lin is None:
        def with_aux(x, d):
            r = fn(x, d)
            return r, r

        jac = jax.jacfwd(with_aux, has_aux=True)
        lin = jax.jit(jax.vmap(jac, in_axes=(0, 0)))
        _LINEARIZE_CACHE[fn] = lin
    return lin


_RESIDUAL_CACHE: Dict[Callable, Callable] = {}


def _residualizer(fn: Callable) -> Callable:
    res = _RESIDUAL_CACHE.get(fn)
    if res is None:
        res = jax.jit(jax.vmap(fn, in_axes=(0, 0)))
        _RESIDUAL_CACHE[fn] = res
    return res


def batch_layout(batches: List[FactorBatch]) -> Tuple[Tuple[str, int], ...]:
    """(name, size) per non-empty batch; residuals are comparable only under equal layouts."""
    return tuple((b.name, b.size) for b in batches if b.size > 0)


def evaluate_residuals(batches: List[FactorBatch]) -> np.ndarray:
    parts = []
    for batch in batches:
        if batch.size == 0:
            continue
        x0 = jnp.zeros(batch.columns.shape)
        parts.append(np.asarray(_residualizer(batch.fn)(x0, batch.data)).reshape(-1))
    return np.concatenate(parts) if parts else np.zeros(0)


def linearize(batches: List[FactorBatch], num_params: int):
    """Stack all batches into (r, J) with J as scipy CSR of shape (len(r), num_params)."""
    residuals, rows, cols, vals = [], [], [], []
    row_offset = 0
    for batch in batches:
        if batch.size == 0:
            continue
        x0 = jnp.zeros(batch.columns.shape)
        J, r = _linearizer(batch.fn)(x0, batch.data)
        J = np.asarray(J)  # (M, R, P)
        r = np.asarray(r).reshape(batch.size, -1)  # (M, R)
        m, rdim, p = J.shape
        row_idx = row_offset + np.arange(m * rdim).reshape(m, rdim)
        row_b = np.broadcast_to(row_idx[:, :, None], (m, rdim, p))
        col_b = np.broadcast_to(batch.columns[:, None, :], (m, rdim, p))
        mask = (col_b >= 0) & (J != 0.0)
        rows.append(row_b[mask])
        cols.append(col_b[mask])
        vals.append(J[mask])
        residuals.append(r.reshape(-1))
        row_offset += m * rdim
    if not residuals:
        return np.zeros(0), sp.csr_matrix((0, num_params))
    r_all = np.concatenate(residuals)
    J_all = sp.csr_matrix(
        (np.concatenate(vals), (np.concatenate(rows), np.concatenate(cols))),
        shape=(row_offset, num_params),
    )
    return r_all, J_all


class LevenbergMarquardt:
    """Batch least-squares solver with per-iteration callbacks."""

    def __init__(self, options: Optional[SolverOptions] = None):
        self.options = options or SolverOptions()
        self._callbacks: List[IterationCallback] = []

    def add_callback(self, cb: IterationCallback) -> None:
        self._callbacks.append(cb)

    def _notify(self, summary: IterationSummary) -> None:
        for cb in self._callbacks:
            cb(summary)

    def solve(self, problem: Problem) -> SolverSummary:
        opts = self.options
        n = problem.num_params()
        batches = problem.build_batches()
        layout = batch_layout(batches)
        r, J = linearize(batches, n)
        cost = 0.5 * float(r @ r)
        initial_cost = cost
        lam = opts.initial_lambda
        nu = 2.0
        message = "maximum iterations reached"
        converged = False
        iteration = 0

        for iteration in range(1, opts.max_iterations + 1):
            g = J.T @ r
            g_norm = float(np.max(np.abs(g))) if g.size else 0.0
            if g_norm < opts.gradient_tolerance:
                message, converged = "gradient tolerance reached", True
                self._notify(IterationSummary(iteration, cost, g_norm, 1.0 / lam, False))
                break

            H = (J.T @ J).tocsc()
            diag = np.clip(H.diagonal(), opts.min_diagonal, opts.max_diagonal)
            A = H + sp.diags(lam * diag, format="csc")
            dx = spla.spsolve(A, -g)
            if not np.all(np.isfinite(dx)):
                lam *= nu
                nu *= 2.0
                self._notify(IterationSummary(iteration, cost, g_norm, 1.0 / lam, False))
                continue

            token = problem.backup()
            problem.apply_update(dx)
            new_batches = problem.build_batches()
            if batch_layout(new_batches) != layout:
                # the step changed which measurements are evaluated; costs are not comparable
                problem.restore(token)
                lam *= nu
                nu *= 2.0
                self._notify(IterationSummary(iteration, cost, g_norm, 1.0 / lam, False))
                continue
            r_new = evaluate_residuals(new_batches)
            new_cost = 0.5 * float(r_new @ r_new)
            # gain ratio against the linear model
            predicted = 0.5 * float(dx @ (lam * diag * dx - g))
            rho = (cost - new_cost) / predicted if predicted > 0.0 else -1.0

            if rho > 0.0 and np.isfinite(new_cost):
                rel_change = (cost - new_cost) / max(cost, 1e-300)
                cost = new_cost
                lam *= max(1.0 / 3.0, 1.0 - (2.0 * rho - 1.0) ** 3)
                nu = 2.0
                self._notify(IterationSummary(iteration, cost, g_norm, 1.0 / lam, True))
                if rel_change < opts.function_tolerance:
                    message, converged = "function tolerance reached", True
                    break
                if float(np.linalg.norm(dx)) < opts.parameter_tolerance:
                    message, converged = "parameter tolerance reached", True
                    break
                r, J = linearize(new_batches, n)
            else:
                problem.restore(token)
                lam *= nu
                nu *= 2.0
                self._notify(IterationSummary(iteration, cost, g_norm, 1.0 / lam, False))

        _logger.info(
            "LM finished after %d iteration(s): cost %.6e -> %.6e (%s)",
            iteration, initial_cost, cost, message,
        )
        return SolverSummary(initial_cost, cost, iteration, converged, message)

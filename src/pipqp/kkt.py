# Copyright 2025 Google LLC
#
# Licensed under the Apache License, Version 2.0 (the "License");
# you may not use this file except in compliance with the License.
# You may obtain a copy of the License at
#
#    http://www.apache.org/licenses/LICENSE-2.0
#
# Unless required by applicable law or agreed to in writing, software
# distributed under the License is distributed on an "AS IS" BASIS,
# WITHOUT WARRANTIES OR CONDITIONS OF ANY KIND, either express or implied.
# See the License for the specific language governing permissions and
# limitations under the License.
# ==============================================================================
"""KKT linear systems of the proximal interior point method."""

import logging
from typing import Any, NamedTuple

import numpy as np
import scipy.linalg
import scipy.sparse as sp

from . import data as data_lib
from . import direct
from .settings import Settings

FactorizationError = direct.FactorizationError


def _inf_norm(v: np.ndarray) -> float:
  return float(np.max(np.abs(v), initial=0.0))


class Direction(NamedTuple):
  """A search direction (or an iterate) of the interior point method."""

  x: np.ndarray
  y: np.ndarray
  z: np.ndarray
  z_lb: np.ndarray
  z_ub: np.ndarray
  s: np.ndarray
  s_lb: np.ndarray
  s_ub: np.ndarray


class KktSystem:
  """Reduced KKT system with iterative refinement.

  The slacks and the box duals are eliminated, leaving the symmetric
  quasi-definite system
      [ P + rho I + B    A.T       G.T     ] [ dx ]   [ rhs_x ]
      [     A         -delta I      0      ] [ dy ] = [ rhs_y ]
      [     G            0     -(W + delta I)] [ dz ]   [ rhs_z ]
  where W = S / Z and B is the diagonal contributed by the box constraints.

  The matrix that is factorized has its diagonal floored at a static
  regularization; the exact matrix is used to compute refinement residuals.
  Subclasses provide the factorization for one matrix layout.
  """

  def __init__(self, qp: data_lib.ProblemData, settings: Settings):
    self.qp = qp
    self.settings = settings
    self.n, self.p, self.m = qp.n, qp.p, qp.m
    self.p_diag = np.asarray(qp.P.diagonal()).ravel()
    self.true_diag = np.zeros(self.n + self.p + self.m)
    self.reg_diag = np.zeros(self.n + self.p + self.m)
    self.static_reg_active = False

  def update_data(self, qp: data_lib.ProblemData):
    """Replaces the matrix values of the system, keeping its structure."""
    self.qp = qp
    self.p_diag = np.asarray(qp.P.diagonal()).ravel()

  def update_scalings(
      self,
      rho: float,
      delta: float,
      s: np.ndarray,
      z: np.ndarray,
      s_lb: np.ndarray,
      z_lb: np.ndarray,
      s_ub: np.ndarray,
      z_ub: np.ndarray,
  ) -> None:
    """Sets the regularization and the slack/dual scaling of the system."""
    qp = self.qp
    self.rho, self.delta = rho, delta
    self.s, self.z = s, z
    self.s_lb, self.z_lb = s_lb, z_lb
    self.s_ub, self.z_ub = s_ub, z_ub
    self.w = s / z + delta
    self.w_lb = s_lb / z_lb + delta
    self.w_ub = s_ub / z_ub + delta

    self.x_diag = np.full(self.n, rho)
    self.x_diag[qp.x_lb_idx] += 1.0 / self.w_lb
    self.x_diag[qp.x_ub_idx] += 1.0 / self.w_ub

    self.true_diag = np.concatenate(
        [self.p_diag + self.x_diag, np.full(self.p, -delta), -self.w]
    )
    static_reg = (
        self.settings.iterative_refinement_static_regularization_eps
        + self.settings.iterative_refinement_static_regularization_rel
        * _inf_norm(self.true_diag)
    )
    self.reg_diag = self.true_diag.copy()
    self.reg_diag[: self.n] = np.maximum(self.reg_diag[: self.n], static_reg)
    self.reg_diag[self.n :] = np.minimum(self.reg_diag[self.n :], -static_reg)
    self.static_reg_active = bool(np.any(self.reg_diag != self.true_diag))

  def factorize(self) -> bool:
    """Factorizes the regularized KKT matrix, returns False on failure."""
    try:
      self._factorize()
    except FactorizationError as e:
      logging.debug(
          "KKT factorization failed (rho=%e, delta=%e): %s",
          self.rho,
          self.delta,
          e,
      )
      return False
    return True

  def _factorize(self) -> None:
    raise NotImplementedError

  def _backsolve(self, rhs: np.ndarray) -> np.ndarray:
    """Solves with the factorized (regularized) matrix."""
    raise NotImplementedError

  def matvec(self, v: np.ndarray) -> np.ndarray:
    """Multiplies by the exact (unfloored) KKT matrix."""
    qp, n, p = self.qp, self.n, self.p
    x, y, z = v[:n], v[n : n + p], v[n + p :]
    return np.concatenate([
        qp.P @ x + self.x_diag * x + qp.A.T @ y + qp.G.T @ z,
        qp.A @ x - self.delta * y,
        qp.G @ x - self.w * z,
    ])

  def solve(
      self,
      rx: np.ndarray,
      ry: np.ndarray,
      rz: np.ndarray,
      rz_lb: np.ndarray,
      rz_ub: np.ndarray,
      rs: np.ndarray,
      rs_lb: np.ndarray,
      rs_ub: np.ndarray,
  ) -> tuple[Direction, dict[str, Any]]:
    """Solves the full Newton system for a given right-hand side.

    The full system reads
      (P + rho I) dx + A.T dy + G.T dz - dz_lb + dz_ub = rx
      A dx - delta dy = ry
      G dx - delta dz + ds = rz
      -dx + ds_lb - delta dz_lb = rz_lb
      dx + ds_ub - delta dz_ub = rz_ub
      Z ds + S dz = rs   (and likewise for the box pairs)
    where the box rows only involve the bounded entries of dx.

    Returns:
      A tuple containing the direction and the refinement statistics.

    Raises:
      FactorizationError: If the solution contains non-finite values.
    """
    qp, n, p = self.qp, self.n, self.p
    lb_idx, ub_idx = qp.x_lb_idx, qp.x_ub_idx
    rhs_lb = (rz_lb - rs_lb / self.z_lb) / self.w_lb
    rhs_ub = (rz_ub - rs_ub / self.z_ub) / self.w_ub
    rhs_x = rx.copy()
    rhs_x[lb_idx] -= rhs_lb
    rhs_x[ub_idx] += rhs_ub
    rhs = np.concatenate([rhs_x, ry, rz - rs / self.z])

    sol, stats = self._solve_refined(rhs)

    dx, dy, dz = sol[:n], sol[n : n + p], sol[n + p :]
    dz_lb = (-dx[lb_idx] + rs_lb / self.z_lb - rz_lb) / self.w_lb
    dz_ub = (dx[ub_idx] + rs_ub / self.z_ub - rz_ub) / self.w_ub
    ds = (rs - self.s * dz) / self.z
    ds_lb = (rs_lb - self.s_lb * dz_lb) / self.z_lb
    ds_ub = (rs_ub - self.s_ub * dz_ub) / self.z_ub
    return Direction(dx, dy, dz, dz_lb, dz_ub, ds, ds_lb, ds_ub), stats

  def _solve_refined(
      self, rhs: np.ndarray
  ) -> tuple[np.ndarray, dict[str, Any]]:
    """Solves the reduced system, refining against the exact matrix."""
    settings = self.settings
    tolerance = (
        settings.iterative_refinement_eps_abs
        + settings.iterative_refinement_eps_rel * _inf_norm(rhs)
    )

    sol = self._backsolve(rhs)
    residual = rhs - self.matvec(sol)
    residual_norm = _inf_norm(residual)

    solves = 1
    status = "converged" if residual_norm <= tolerance else "non-converged"
    if status != "converged" or settings.iterative_refinement_always_enabled:
      for _ in range(settings.iterative_refinement_max_iter):
        candidate = sol + self._backsolve(residual)
        new_residual = rhs - self.matvec(candidate)
        new_residual_norm = _inf_norm(new_residual)
        solves += 1

        improvement = 1.0
        if new_residual_norm < residual_norm:
          improvement = residual_norm / max(new_residual_norm, 1e-300)
          sol, residual = candidate, new_residual
          residual_norm = new_residual_norm

        if residual_norm <= tolerance:
          status = "converged"
          break

        # Check for stalling (residual not improving fast enough).
        if improvement < settings.iterative_refinement_min_improvement_rate:
          logging.debug(
              "Iterative refinement stalled at step %d, res: %e, rate: %e",
              solves,
              residual_norm,
              improvement,
          )
          status = "stalled"
          break

    if not np.all(np.isfinite(sol)):
      raise FactorizationError("Linear solver returned non-finite values.")

    logging.debug(
        "KKT solve: status=%s, solves=%d, res=%e", status, solves, residual_norm
    )
    return sol, {
        "solves": solves,
        "final_residual_norm": residual_norm,
        "status": status,
    }

  def free(self):
    """Frees the solver resources."""


class DenseKktSystem(KktSystem):
  """Dense KKT system factorized through its Schur complement.

  Eliminating dy and dz gives the positive definite matrix
    P + rho I + B + A.T A / delta + G.T (W + delta I)^-1 G,
  which is factorized with a Cholesky decomposition.
  """

  def _factorize(self):
    qp, n, p = self.qp, self.n, self.p
    self.d_y = -self.reg_diag[n : n + p]
    self.d_z = -self.reg_diag[n + p :]
    schur = qp.P.copy()
    schur[np.diag_indices(n)] = self.reg_diag[:n]
    schur += qp.A.T @ (qp.A / self.d_y[:, None])
    schur += qp.G.T @ (qp.G / self.d_z[:, None])
    try:
      self.cholesky = scipy.linalg.cho_factor(schur)
    except (np.linalg.LinAlgError, ValueError) as e:
      raise FactorizationError(str(e)) from e

  def _backsolve(self, rhs):
    qp, n, p = self.qp, self.n, self.p
    r_x, r_y, r_z = rhs[:n], rhs[n : n + p], rhs[n + p :]
    x = scipy.linalg.cho_solve(
        self.cholesky,
        r_x + qp.A.T @ (r_y / self.d_y) + qp.G.T @ (r_z / self.d_z),
    )
    y = (qp.A @ x - r_y) / self.d_y
    z = (qp.G @ x - r_z) / self.d_z
    return np.concatenate([x, y, z])


class SparseKktSystem(KktSystem):
  """Sparse KKT system factorized by a direct sparse solver."""

  def __init__(
      self,
      qp: data_lib.ProblemData,
      settings: Settings,
      solver: direct.LinearSolver,
  ):
    super().__init__(qp, settings)
    self.solver = solver
    self.kkt = self._assemble(qp)
    # Cache indices of the diagonal elements for fast updates.
    self.kkt_nan_idxs = np.isnan(self.kkt.data)

  def _assemble(self, qp):
    # Pre-allocate KKT scaffold. We use NaNs to mark mutable diagonals.
    n_nans = sp.diags(np.full(self.n, np.nan), format="csc")
    if self.p + self.m == 0:
      kkt = qp.P + n_nans
    else:
      c = sp.vstack([qp.A, qp.G], format="csc")
      pm_nans = sp.diags(np.full(self.p + self.m, np.nan), format="csc")
      kkt = sp.bmat([[qp.P + n_nans, c.T], [c, pm_nans]])
    return kkt.asformat(self.solver.format()).astype(np.float64)

  def update_data(self, qp):
    kkt = self._assemble(qp)
    if not (
        np.array_equal(kkt.indptr, self.kkt.indptr)
        and np.array_equal(kkt.indices, self.kkt.indices)
    ):
      raise ValueError("The sparsity pattern of the KKT matrix changed.")
    super().update_data(qp)
    self.kkt.data[:] = kkt.data

  def _factorize(self):
    # The backend factorizes the floored diagonal; `self.kkt` is restored to
    # the exact matrix used by `matvec`.
    self.kkt.data[self.kkt_nan_idxs] = self.reg_diag
    try:
      self.solver.update(self.kkt)
    finally:
      self.kkt.data[self.kkt_nan_idxs] = self.true_diag

  def _backsolve(self, rhs):
    return self.solver.solve(rhs)

  def matvec(self, v):
    return self.kkt @ v

  def free(self):
    self.solver.free()

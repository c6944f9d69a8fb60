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
"""Primal-dual step engine of the proximal interior point method.

All quantities in this module live in the scaled space of the preconditioned
problem. Box duals and slacks are stored compactly, one entry per finite bound.
"""

import dataclasses
import logging
from typing import Any, Dict, NamedTuple

import numpy as np

from . import data as data_lib
from . import kkt as kkt_lib
from .settings import Settings

# Slacks and duals of a warm start are lifted to at least this value.
_WARM_START_FLOOR = 1e-2


@dataclasses.dataclass
class Iterate:
  """Primal-dual iterate together with its proximal centers."""

  x: np.ndarray
  y: np.ndarray
  z: np.ndarray
  z_lb: np.ndarray
  z_ub: np.ndarray
  s: np.ndarray
  s_lb: np.ndarray
  s_ub: np.ndarray
  zeta: np.ndarray
  lambda_: np.ndarray
  nu: np.ndarray
  nu_lb: np.ndarray
  nu_ub: np.ndarray

  def copy(self) -> "Iterate":
    return Iterate(**{
        f.name: getattr(self, f.name).copy() for f in dataclasses.fields(self)
    })

  def complementarity(self) -> float:
    return float(
        self.s @ self.z + self.s_lb @ self.z_lb + self.s_ub @ self.z_ub
    )


class Residuals(NamedTuple):
  """Unregularized KKT residuals and the products used to compute them."""

  px: np.ndarray
  aty: np.ndarray
  gtz: np.ndarray
  ax: np.ndarray
  gx: np.ndarray
  rx: np.ndarray
  ry: np.ndarray
  rz: np.ndarray
  rz_lb: np.ndarray
  rz_ub: np.ndarray


def max_step_size(v: np.ndarray, dv: np.ndarray) -> float:
  """Finds the largest `alpha` s.t. v + alpha * dv >= 0, possibly inf."""
  idx = dv < 0
  if not np.any(idx):
    return np.inf
  return float(np.min(-v[idx] / dv[idx]))


class StepEngine:
  """Computes starting points and predictor-corrector steps."""

  def __init__(
      self,
      qp: data_lib.ProblemData,
      kkt: kkt_lib.KktSystem,
      settings: Settings,
  ):
    self.qp = qp
    self.kkt = kkt
    self.settings = settings
    self.cone_dim = qp.m + qp.n_lb + qp.n_ub

  def mu(self, it: Iterate) -> float:
    """Average complementarity, zero without inequalities or bounds."""
    if self.cone_dim == 0:
      return 0.0
    return it.complementarity() / self.cone_dim

  def residuals(self, it: Iterate) -> Residuals:
    qp = self.qp
    px = qp.P @ it.x
    aty = qp.A.T @ it.y
    gtz = qp.G.T @ it.z
    ax = qp.A @ it.x
    gx = qp.G @ it.x
    rx = -(px + qp.c + aty + gtz)
    rx[qp.x_lb_idx] += it.z_lb
    rx[qp.x_ub_idx] -= it.z_ub
    return Residuals(
        px=px,
        aty=aty,
        gtz=gtz,
        ax=ax,
        gx=gx,
        rx=rx,
        ry=qp.b - ax,
        rz=qp.h - gx - it.s,
        rz_lb=it.x[qp.x_lb_idx] - qp.x_lb - it.s_lb,
        rz_ub=qp.x_ub - it.x[qp.x_ub_idx] - it.s_ub,
    )

  def _factorize(self, rho, delta, s, z, s_lb, z_lb, s_ub, z_ub):
    self.kkt.update_scalings(rho, delta, s, z, s_lb, z_lb, s_ub, z_ub)
    if not self.kkt.factorize():
      raise kkt_lib.FactorizationError(
          f"Could not factorize the KKT matrix (rho={rho}, delta={delta})."
      )

  def initial_point(self, rho: float, delta: float) -> Iterate:
    """Computes a Mehrotra-style starting point.

    One regularized KKT system with unit slack scaling is solved, which gives
    the minimizer of the regularized equality constrained problem that treats
    every inequality as an equality. Slacks and duals are then shifted into
    the strict interior.

    Raises:
      FactorizationError: If the KKT matrix cannot be factorized.
    """
    qp = self.qp
    m, n_lb, n_ub = qp.m, qp.n_lb, qp.n_ub
    ones_m, ones_lb, ones_ub = np.ones(m), np.ones(n_lb), np.ones(n_ub)
    self._factorize(rho, delta, ones_m, ones_m, ones_lb, ones_lb, ones_ub,
                    ones_ub)
    d, _ = self.kkt.solve(
        -qp.c, qp.b, qp.h, -qp.x_lb, qp.x_ub,
        np.zeros(m), np.zeros(n_lb), np.zeros(n_ub),
    )

    z, z_lb, z_ub = d.z, d.z_lb, d.z_ub
    s, s_lb, s_ub = -z, -z_lb, -z_ub
    if self.cone_dim > 0:
      all_s = np.concatenate([s, s_lb, s_ub])
      all_z = np.concatenate([z, z_lb, z_ub])
      all_s += max(-1.5 * np.min(all_s), 0.0)
      all_z += max(-1.5 * np.min(all_z), 0.0)
      sz = all_s @ all_z
      if sz <= 0.0:
        all_s += 1.0
        all_z += 1.0
      else:
        shift_s = 0.5 * sz / np.sum(all_z)
        shift_z = 0.5 * sz / np.sum(all_s)
        all_s += shift_s
        all_z += shift_z
      s, s_lb, s_ub = np.split(all_s, [m, m + n_lb])
      z, z_lb, z_ub = np.split(all_z, [m, m + n_lb])

    return Iterate(
        x=d.x, y=d.y, z=z, z_lb=z_lb, z_ub=z_ub, s=s, s_lb=s_lb, s_ub=s_ub,
        zeta=d.x.copy(), lambda_=d.y.copy(), nu=z.copy(),
        nu_lb=z_lb.copy(), nu_ub=z_ub.copy(),
    )

  def warm_point(self, it: Iterate) -> Iterate:
    """Turns a previous solution into a strictly interior starting point."""
    it = it.copy()
    for name in ("s", "s_lb", "s_ub", "z", "z_lb", "z_ub"):
      setattr(it, name, np.maximum(getattr(it, name), _WARM_START_FLOOR))
    it.zeta = it.x.copy()
    it.lambda_ = it.y.copy()
    it.nu, it.nu_lb, it.nu_ub = it.z.copy(), it.z_lb.copy(), it.z_ub.copy()
    return it

  def step(
      self, it: Iterate, rho: float, delta: float, mu: float
  ) -> tuple[Iterate, Dict[str, Any]]:
    """Takes one Mehrotra predictor-corrector step from `it`.

    Args:
      it: The current iterate, left unchanged.
      rho: Primal proximal regularization.
      delta: Dual proximal regularization.
      mu: Current barrier parameter.

    Returns:
      A tuple containing the next iterate and a dictionary of step statistics.

    Raises:
      FactorizationError: If the KKT matrix cannot be factorized or a solve
        produces non-finite values.
    """
    tau = self.settings.tau
    res = self.residuals(it)
    # Proximal terms.
    rx = res.rx - rho * (it.x - it.zeta)
    ry = res.ry + delta * (it.y - it.lambda_)
    rz = res.rz + delta * (it.z - it.nu)
    rz_lb = res.rz_lb + delta * (it.z_lb - it.nu_lb)
    rz_ub = res.rz_ub + delta * (it.z_ub - it.nu_ub)

    self._factorize(rho, delta, it.s, it.z, it.s_lb, it.z_lb, it.s_ub, it.z_ub)

    # --- Predictor (affine) step ---
    d_aff, aff_stats = self.kkt.solve(
        rx, ry, rz, rz_lb, rz_ub,
        -it.s * it.z, -it.s_lb * it.z_lb, -it.s_ub * it.z_ub,
    )
    stats = {"predictor_lin_sys_stats": aff_stats}

    if self.cone_dim == 0:
      d, sigma = d_aff, 0.0
      stats["corrector_lin_sys_stats"] = {"solves": 0}
    else:
      alpha_p = min(1.0, self._primal_max_step(it, d_aff))
      alpha_d = min(1.0, self._dual_max_step(it, d_aff))
      mu_aff = (
          (it.s + alpha_p * d_aff.s) @ (it.z + alpha_d * d_aff.z)
          + (it.s_lb + alpha_p * d_aff.s_lb) @ (it.z_lb + alpha_d * d_aff.z_lb)
          + (it.s_ub + alpha_p * d_aff.s_ub) @ (it.z_ub + alpha_d * d_aff.z_ub)
      ) / self.cone_dim
      sigma = float(np.clip((mu_aff / mu) ** 3, 0.0, 1.0)) if mu > 0 else 0.0

      # --- Corrector step ---
      d, corr_stats = self.kkt.solve(
          rx, ry, rz, rz_lb, rz_ub,
          sigma * mu - it.s * it.z - d_aff.s * d_aff.z,
          sigma * mu - it.s_lb * it.z_lb - d_aff.s_lb * d_aff.z_lb,
          sigma * mu - it.s_ub * it.z_ub - d_aff.s_ub * d_aff.z_ub,
      )
      stats["corrector_lin_sys_stats"] = corr_stats

    primal_step = min(1.0, tau * self._primal_max_step(it, d))
    dual_step = min(1.0, tau * self._dual_max_step(it, d))
    logging.debug(
        "sigma=%e, primal_step=%e, dual_step=%e", sigma, primal_step, dual_step
    )

    new = it.copy()
    new.x += primal_step * d.x
    new.s += primal_step * d.s
    new.s_lb += primal_step * d.s_lb
    new.s_ub += primal_step * d.s_ub
    new.y += dual_step * d.y
    new.z += dual_step * d.z
    new.z_lb += dual_step * d.z_lb
    new.z_ub += dual_step * d.z_ub
    stats.update(sigma=sigma, primal_step=primal_step, dual_step=dual_step)
    return new, stats

  def _primal_max_step(self, it: Iterate, d: kkt_lib.Direction) -> float:
    return min(
        max_step_size(it.s, d.s),
        max_step_size(it.s_lb, d.s_lb),
        max_step_size(it.s_ub, d.s_ub),
    )

  def _dual_max_step(self, it: Iterate, d: kkt_lib.Direction) -> float:
    return min(
        max_step_size(it.z, d.z),
        max_step_size(it.z_lb, d.z_lb),
        max_step_size(it.z_ub, d.z_ub),
    )

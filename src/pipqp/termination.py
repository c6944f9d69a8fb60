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
"""Convergence and infeasibility checks.

Residuals are evaluated on the scaled iterate and mapped back through the
equilibration, so that every tolerance applies to the original problem.
"""

import logging

import numpy as np

from . import data as data_lib
from . import ipm
from . import preconditioner as preconditioner_lib
from .results import Info
from .settings import Settings


def _inf_norm(v: np.ndarray) -> float:
  return float(np.max(np.abs(v), initial=0.0))


class ConvergenceMonitor:
  """Evaluates optimality and infeasibility of scaled iterates."""

  def __init__(
      self,
      qp: data_lib.ProblemData,
      scaling: preconditioner_lib.RuizEquilibration,
      settings: Settings,
  ):
    self.qp = qp
    self.scaling = scaling
    self.settings = settings

  def update_info(self, info: Info, it: ipm.Iterate, res: ipm.Residuals):
    """Writes residuals, objectives and the duality gap of `it` into `info`."""
    qp, sc = self.qp, self.scaling
    lb_idx, ub_idx = qp.x_lb_idx, qp.x_ub_idx

    info.primal_inf = max(
        _inf_norm(sc.unscale_primal_res_eq(res.ry)),
        _inf_norm(sc.unscale_primal_res_ineq(res.rz)),
        _inf_norm(sc.unscale_primal_res_box(res.rz_lb, lb_idx)),
        _inf_norm(sc.unscale_primal_res_box(res.rz_ub, ub_idx)),
    )
    x = sc.unscale_primal(it.x)
    info.primal_rel_inf = max(
        _inf_norm(sc.unscale_primal_res_eq(res.ax)),
        _inf_norm(sc.unscale_primal_res_eq(qp.b)),
        _inf_norm(sc.unscale_primal_res_ineq(res.gx)),
        _inf_norm(sc.unscale_primal_res_ineq(qp.h)),
        _inf_norm(sc.unscale_slack_ineq(it.s)),
        _inf_norm(x[lb_idx]),
        _inf_norm(sc.unscale_primal_res_box(qp.x_lb, lb_idx)),
        _inf_norm(sc.unscale_slack_box(it.s_lb, lb_idx)),
        _inf_norm(x[ub_idx]),
        _inf_norm(sc.unscale_primal_res_box(qp.x_ub, ub_idx)),
        _inf_norm(sc.unscale_slack_box(it.s_ub, ub_idx)),
    )

    info.dual_inf = _inf_norm(sc.unscale_dual_res(res.rx))
    info.dual_rel_inf = max(
        _inf_norm(sc.unscale_dual_res(res.px)),
        _inf_norm(sc.unscale_dual_res(res.aty)),
        _inf_norm(sc.unscale_dual_res(res.gtz)),
        _inf_norm(sc.unscale_dual_res(qp.c)),
        _inf_norm(sc.unscale_dual_box(it.z_lb, lb_idx)),
        _inf_norm(sc.unscale_dual_box(it.z_ub, ub_idx)),
    )

    # The scaled objective terms all carry the cost scaling c_s.
    xpx = sc.unscale_cost(it.x @ res.px)
    ctx = sc.unscale_cost(qp.c @ it.x)
    bty = sc.unscale_cost(qp.b @ it.y)
    htz = sc.unscale_cost(qp.h @ it.z)
    lbz = sc.unscale_cost(qp.x_lb @ it.z_lb)
    ubz = sc.unscale_cost(qp.x_ub @ it.z_ub)
    info.primal_obj = 0.5 * xpx + ctx
    info.dual_obj = -0.5 * xpx - bty - htz + lbz - ubz
    info.duality_gap = abs(info.primal_obj - info.dual_obj)
    info.duality_gap_rel = max(
        abs(xpx), abs(ctx), abs(bty), abs(htz), abs(lbz), abs(ubz)
    )

  def primal_converged(self, info: Info) -> bool:
    s = self.settings
    return info.primal_inf <= s.eps_abs + s.eps_rel * info.primal_rel_inf

  def dual_converged(self, info: Info) -> bool:
    s = self.settings
    return info.dual_inf <= s.eps_abs + s.eps_rel * info.dual_rel_inf

  def is_solved(self, info: Info) -> bool:
    s = self.settings
    if not (self.primal_converged(info) and self.dual_converged(info)):
      return False
    if not s.check_duality_gap:
      return True
    return (
        info.duality_gap
        <= s.eps_duality_gap_abs + s.eps_duality_gap_rel * info.duality_gap_rel
    )

  def is_primal_infeasible(self, it: ipm.Iterate, info: Info) -> bool:
    """Checks for a Farkas certificate of primal infeasibility.

    The displacement of the duals from their frozen proximal centers,
    d = (dy, dz, dz_lb, dz_ub), certifies infeasibility if
      A.T dy + G.T dz - dz_lb + dz_ub ~= 0,
      b.T dy + h.T dz+ - x_lb.T dz_lb+ + x_ub.T dz_ub+ < 0,
    where v+ = max(v, 0). The negative parts of the inequality and bound
    displacements pair with the missing lower side of those constraints and
    add nothing to the support. Stationarity is measured against both |d|
    and the support.
    """
    if self.primal_converged(info):
      return False
    qp, sc, s = self.qp, self.scaling, self.settings
    lb_idx, ub_idx = qp.x_lb_idx, qp.x_ub_idx
    dy = it.y - it.lambda_
    dz = it.z - it.nu
    dz_lb = it.z_lb - it.nu_lb
    dz_ub = it.z_ub - it.nu_ub

    norm_d = max(
        _inf_norm(sc.unscale_dual_eq(dy)),
        _inf_norm(sc.unscale_dual_ineq(dz)),
        _inf_norm(sc.unscale_dual_box(dz_lb, lb_idx)),
        _inf_norm(sc.unscale_dual_box(dz_ub, ub_idx)),
    )
    if norm_d == 0.0:
      return False

    stationarity = qp.A.T @ dy + qp.G.T @ dz
    stationarity[lb_idx] -= dz_lb
    stationarity[ub_idx] += dz_ub
    stationarity_norm = _inf_norm(sc.unscale_dual_res(stationarity))
    support = sc.unscale_cost(
        qp.b @ dy
        + qp.h @ np.maximum(dz, 0.0)
        - qp.x_lb @ np.maximum(dz_lb, 0.0)
        + qp.x_ub @ np.maximum(dz_ub, 0.0)
    )
    logging.debug(
        "Primal infeasibility check: |d|=%e, stationarity=%e, support=%e",
        norm_d,
        stationarity_norm,
        support,
    )
    if support >= -s.eps_abs * norm_d:
      return False
    return stationarity_norm <= s.eps_abs * (abs(support) + norm_d)

  def is_dual_infeasible(self, it: ipm.Iterate, info: Info) -> bool:
    """Checks for a ray along which the objective is unbounded below.

    The displacement of x from the frozen proximal center, dx, certifies
    unboundedness if
      P dx ~= 0,  A dx ~= 0,  G dx <= 0,  dx[lb] >= 0,  dx[ub] <= 0,
      c.T dx < 0.
    """
    if self.dual_converged(info):
      return False
    qp, sc, eps = self.qp, self.scaling, self.settings.eps_abs
    dx = it.x - it.zeta
    dx_u = sc.unscale_primal(dx)
    norm_d = _inf_norm(dx_u)
    if norm_d == 0.0:
      return False

    pdx = _inf_norm(sc.unscale_dual_res(qp.P @ dx))
    adx = _inf_norm(sc.unscale_primal_res_eq(qp.A @ dx))
    gdx = np.max(sc.unscale_primal_res_ineq(qp.G @ dx), initial=-np.inf)
    lb_dx = np.min(dx_u[qp.x_lb_idx], initial=np.inf)
    ub_dx = np.max(dx_u[qp.x_ub_idx], initial=-np.inf)
    ctdx = sc.unscale_cost(qp.c @ dx)
    logging.debug(
        "Dual infeasibility check: |dx|=%e, |P dx|=%e, |A dx|=%e, c.T dx=%e",
        norm_d,
        pdx,
        adx,
        ctdx,
    )
    return (
        pdx <= eps * norm_d
        and adx <= eps * norm_d
        and gdx <= eps * norm_d
        and lb_dx >= -eps * norm_d
        and ub_dx <= eps * norm_d
        and ctdx <= -eps * norm_d
    )

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
"""Ruiz equilibration of the QP data."""

import dataclasses
import logging

import numpy as np

from . import data as data_lib

_norm = np.linalg.norm


class RuizEquilibration:
  """Diagonal scaling of the QP data.

  The scaled problem is
    P~ = c_s D P D,  c~ = c_s D c,
    A~ = E_A A D,    b~ = E_A b,
    G~ = E_G G D,    h~ = E_G h,
    x~_lb = x_lb / D,  x~_ub = x_ub / D,
  so that x = D x~, y = E_A y~ / c_s, z = E_G z~ / c_s, s = s~ / E_G.
  """

  def __init__(self, n: int, p: int, m: int, min_scale=1e-4, max_scale=1e4):
    self.min_scale = min_scale
    self.max_scale = max_scale
    self.d = np.ones(n)
    self.e_a = np.ones(p)
    self.e_g = np.ones(m)
    self.c_s = 1.0

  def compute(
      self, qp: data_lib.ProblemData, num_iters: int, scale_cost: bool
  ) -> None:
    """Computes the scaling factors of `qp` with `num_iters` Ruiz passes."""
    la = qp.la
    p_mat, a, g, c = qp.P, qp.A, qp.G, qp.c
    self.d = np.ones(qp.n)
    self.e_a = np.ones(qp.p)
    self.e_g = np.ones(qp.m)
    self.c_s = 1.0

    for i in range(num_iters):
      # Column norms of the KKT matrix [P A' G'; A 0 0; G 0 0].
      d_i = np.maximum.reduce(
          [la.col_norms(p_mat), la.col_norms(a), la.col_norms(g)]
      )
      d_i = self._limit(d_i)
      e_a_i = self._limit(la.row_norms(a))
      e_g_i = self._limit(la.row_norms(g))

      p_mat = la.scale(p_mat, d_i, d_i)
      a = la.scale(a, e_a_i, d_i)
      g = la.scale(g, e_g_i, d_i)
      c = c * d_i

      self.d *= d_i
      self.e_a *= e_a_i
      self.e_g *= e_g_i

      if scale_cost:
        cost_norm = max(
            np.mean(la.col_norms(p_mat)) if qp.n else 0.0,
            _norm(c, np.inf) if qp.n else 0.0,
        )
        gamma = 1.0 / cost_norm if cost_norm > 0.0 else 1.0
        gamma = float(np.clip(gamma, self.min_scale, self.max_scale))
        p_mat = p_mat * gamma
        c = c * gamma
        self.c_s *= gamma

      logging.debug(
          "Equilibration: iter %d: d_i err: %s, e_a_i err: %s, e_g_i err: %s",
          i,
          _norm(d_i - 1, np.inf) if qp.n else 0.0,
          _norm(e_a_i - 1, np.inf) if qp.p else 0.0,
          _norm(e_g_i - 1, np.inf) if qp.m else 0.0,
      )

  def _limit(self, norms: np.ndarray) -> np.ndarray:
    norms = np.where(norms == 0.0, 1.0, norms)  # Leave empty rows/cols alone.
    return np.clip(1.0 / np.sqrt(norms), self.min_scale, self.max_scale)

  def scale_data(self, qp: data_lib.ProblemData) -> data_lib.ProblemData:
    """Returns the scaled copy of `qp`."""
    la = qp.la
    return dataclasses.replace(
        qp,
        P=la.scale(qp.P, self.c_s * self.d, self.d),
        c=self.c_s * self.d * qp.c,
        A=la.scale(qp.A, self.e_a, self.d),
        b=self.e_a * qp.b,
        G=la.scale(qp.G, self.e_g, self.d),
        h=self.e_g * qp.h,
        x_lb=qp.x_lb / self.d[qp.x_lb_idx],
        x_ub=qp.x_ub / self.d[qp.x_ub_idx],
    )

  # Iterates.
  def scale_primal(self, x):
    return x / self.d

  def unscale_primal(self, x):
    return x * self.d

  def scale_dual_eq(self, y):
    return y * self.c_s / self.e_a

  def unscale_dual_eq(self, y):
    return y * self.e_a / self.c_s

  def scale_dual_ineq(self, z):
    return z * self.c_s / self.e_g

  def unscale_dual_ineq(self, z):
    return z * self.e_g / self.c_s

  def scale_dual_box(self, z, idx):
    return z * self.c_s * self.d[idx]

  def unscale_dual_box(self, z, idx):
    return z / (self.c_s * self.d[idx])

  def scale_slack_ineq(self, s):
    return s * self.e_g

  def unscale_slack_ineq(self, s):
    return s / self.e_g

  def scale_slack_box(self, s, idx):
    return s / self.d[idx]

  def unscale_slack_box(self, s, idx):
    return s * self.d[idx]

  # Residuals.
  def unscale_primal_res_eq(self, r):
    return r / self.e_a

  def unscale_primal_res_ineq(self, r):
    return r / self.e_g

  def unscale_primal_res_box(self, r, idx):
    return r * self.d[idx]

  def unscale_dual_res(self, r):
    return r / (self.c_s * self.d)

  def unscale_cost(self, v):
    return v / self.c_s

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
"""Solve status, diagnostics and solution containers."""

import dataclasses
import enum

import numpy as np


class Status(enum.Enum):
  """Possible outcomes of a solve."""

  SOLVED = "solved"
  MAX_ITER_REACHED = "max_iter_reached"
  PRIMAL_INFEASIBLE = "primal_infeasible"
  DUAL_INFEASIBLE = "dual_infeasible"
  NUMERICAL_ERROR = "numerical_error"
  UNSOLVED = "unsolved"
  INVALID_SETTINGS = "invalid_settings"


@dataclasses.dataclass
class Info:
  """Per-solve diagnostics.

  Attributes:
    status: Status of the last solve.
    iter: Number of iterations performed.
    rho: Current primal proximal regularization.
    delta: Current dual proximal regularization.
    mu: Barrier parameter (average complementarity).
    sigma: Centering parameter of the last corrector step.
    primal_step: Last primal step length.
    dual_step: Last dual step length.
    primal_inf: Absolute primal infeasibility (constraint violation).
    primal_rel_inf: Magnitude the primal infeasibility is compared against.
    dual_inf: Absolute dual infeasibility (stationarity residual).
    dual_rel_inf: Magnitude the dual infeasibility is compared against.
    primal_obj: Primal objective value.
    dual_obj: Dual objective value.
    duality_gap: Absolute duality gap.
    duality_gap_rel: Magnitude the duality gap is compared against.
    factor_retires: Number of factorization retries.
    reg_limit: Regularization floor reached.
    no_primal_update: Iterations without primal progress.
    no_dual_update: Iterations without dual progress.
    setup_time: Time spent in setup [s].
    update_time: Time spent in the last update [s].
    solve_time: Time spent in the last solve [s].
    run_time: Total time of setup/update and solve [s].
  """

  status: Status = Status.UNSOLVED
  iter: int = 0
  rho: float = 0.0
  delta: float = 0.0
  mu: float = 0.0
  sigma: float = 0.0
  primal_step: float = 0.0
  dual_step: float = 0.0
  primal_inf: float = 0.0
  primal_rel_inf: float = 0.0
  dual_inf: float = 0.0
  dual_rel_inf: float = 0.0
  primal_obj: float = 0.0
  dual_obj: float = 0.0
  duality_gap: float = 0.0
  duality_gap_rel: float = 0.0
  factor_retires: int = 0
  reg_limit: float = 0.0
  no_primal_update: int = 0
  no_dual_update: int = 0
  setup_time: float = 0.0
  update_time: float = 0.0
  solve_time: float = 0.0
  run_time: float = 0.0


@dataclasses.dataclass
class Result:
  """Primal-dual solution of the QP and proximal centers.

  Box vectors are of length n. Entries without a bound hold zero duals and
  infinite slacks.

  Attributes:
    x: Primal solution.
    y: Duals of the equality constraints.
    z: Duals of the inequality constraints.
    z_lb: Duals of the lower bounds.
    z_ub: Duals of the upper bounds.
    s: Slacks of the inequality constraints.
    s_lb: Slacks of the lower bounds.
    s_ub: Slacks of the upper bounds.
    zeta: Proximal center of x.
    lambda_: Proximal center of y.
    nu: Proximal center of z.
    nu_lb: Proximal center of z_lb.
    nu_ub: Proximal center of z_ub.
    info: Diagnostics of the last solve.
  """

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
  info: Info = dataclasses.field(default_factory=Info)

  def copy(self) -> "Result":
    return dataclasses.replace(
        self,
        info=dataclasses.replace(self.info),
        **{
            f.name: getattr(self, f.name).copy()
            for f in dataclasses.fields(self)
            if f.name != "info"
        },
    )

  @classmethod
  def empty(cls, n: int, p: int, m: int) -> "Result":
    """Returns an unsolved result of the given dimensions."""
    return cls(
        x=np.zeros(n),
        y=np.zeros(p),
        z=np.zeros(m),
        z_lb=np.zeros(n),
        z_ub=np.zeros(n),
        s=np.zeros(m),
        s_lb=np.full(n, np.inf),
        s_ub=np.full(n, np.inf),
        zeta=np.zeros(n),
        lambda_=np.zeros(p),
        nu=np.zeros(m),
        nu_lb=np.zeros(n),
        nu_ub=np.zeros(n),
    )

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
"""Solver settings."""

import dataclasses
from typing import Any, Callable, List, Optional

import numpy as np

_MACHINE_EPS = float(np.finfo(np.float64).eps)


@dataclasses.dataclass
class Settings:
  """Options of the proximal interior point solver.

  Attributes:
    rho_init: Initial primal proximal regularization.
    delta_init: Initial dual proximal regularization.
    eps_abs: Absolute tolerance on the primal and dual residuals.
    eps_rel: Relative tolerance on the primal and dual residuals.
    check_duality_gap: If True, the duality gap is part of the termination
      criteria.
    eps_duality_gap_abs: Absolute tolerance on the duality gap.
    eps_duality_gap_rel: Relative tolerance on the duality gap.
    reg_lower_limit: Lower limit for the proximal regularization.
    reg_finetune_lower_limit: Lower limit used once the iterates stop making
      progress.
    reg_finetune_primal_update_threshold: Number of iterations without primal
      progress after which the fine-tune limit becomes active.
    reg_finetune_dual_update_threshold: Number of iterations without dual
      progress after which the fine-tune limit becomes active.
    max_iter: Maximum number of iterations.
    max_factor_retires: Maximum number of factorization retries per solve.
    preconditioner_scale_cost: If True, the cost is included in the scaling.
    preconditioner_iter: Number of Ruiz equilibration passes.
    tau: Fraction-to-boundary factor applied to the step lengths.
    iterative_refinement_always_enabled: If True, at least one refinement
      correction is performed on every KKT solve.
    iterative_refinement_eps_abs: Absolute tolerance of iterative refinement.
    iterative_refinement_eps_rel: Relative tolerance of iterative refinement.
    iterative_refinement_max_iter: Maximum number of refinement corrections.
    iterative_refinement_min_improvement_rate: Refinement stops once a
      correction reduces the residual by less than this factor.
    iterative_refinement_static_regularization_eps: Absolute static
      regularization floor applied to the factorized KKT diagonal.
    iterative_refinement_static_regularization_rel: Static regularization
      relative to the largest KKT diagonal entry.
    verbose: If True, prints a summary of each iteration.
    compute_timings: If True, fills the timing fields of `Info`.
    custom_term_cb: Optional callable taking the current `Result`. Returning
      True stops the solve and accepts the current iterate.
  """

  rho_init: float = 1e-6
  delta_init: float = 1e-4
  eps_abs: float = 1e-8
  eps_rel: float = 1e-9
  check_duality_gap: bool = True
  eps_duality_gap_abs: float = 1e-8
  eps_duality_gap_rel: float = 1e-9
  reg_lower_limit: float = 1e-10
  reg_finetune_lower_limit: float = 1e-13
  reg_finetune_primal_update_threshold: int = 7
  reg_finetune_dual_update_threshold: int = 5
  max_iter: int = 250
  max_factor_retires: int = 10
  preconditioner_scale_cost: bool = False
  preconditioner_iter: int = 10
  tau: float = 0.99
  iterative_refinement_always_enabled: bool = False
  iterative_refinement_eps_abs: float = 1e-12
  iterative_refinement_eps_rel: float = 1e-12
  iterative_refinement_max_iter: int = 10
  iterative_refinement_min_improvement_rate: float = 5.0
  iterative_refinement_static_regularization_eps: float = 1e-8
  iterative_refinement_static_regularization_rel: float = _MACHINE_EPS**2
  verbose: bool = False
  compute_timings: bool = False
  custom_term_cb: Optional[Callable[[Any], bool]] = None

  def errors(self) -> List[str]:
    """Returns a description of every invalid option (empty if valid)."""
    errors = []

    def check(condition, message):
      if not condition:
        errors.append(message)

    check(self.rho_init > 0, "rho_init must be positive")
    check(self.delta_init > 0, "delta_init must be positive")
    check(self.eps_abs > 0, "eps_abs must be positive")
    check(self.eps_rel >= 0, "eps_rel must be non-negative")
    check(
        self.eps_duality_gap_abs >= 0,
        "eps_duality_gap_abs must be non-negative",
    )
    check(
        self.eps_duality_gap_rel >= 0,
        "eps_duality_gap_rel must be non-negative",
    )
    check(self.reg_lower_limit > 0, "reg_lower_limit must be positive")
    check(
        0 < self.reg_finetune_lower_limit <= self.reg_lower_limit,
        "reg_finetune_lower_limit must be in (0, reg_lower_limit]",
    )
    check(
        self.reg_finetune_primal_update_threshold >= 0,
        "reg_finetune_primal_update_threshold must be non-negative",
    )
    check(
        self.reg_finetune_dual_update_threshold >= 0,
        "reg_finetune_dual_update_threshold must be non-negative",
    )
    check(self.max_iter > 0, "max_iter must be positive")
    check(self.max_factor_retires >= 0, "max_factor_retires must be >= 0")
    check(self.preconditioner_iter >= 0, "preconditioner_iter must be >= 0")
    check(0 < self.tau <= 1, "tau must be in (0, 1]")
    check(
        self.iterative_refinement_eps_abs >= 0,
        "iterative_refinement_eps_abs must be non-negative",
    )
    check(
        self.iterative_refinement_eps_rel >= 0,
        "iterative_refinement_eps_rel must be non-negative",
    )
    check(
        self.iterative_refinement_max_iter >= 0,
        "iterative_refinement_max_iter must be >= 0",
    )
    check(
        self.iterative_refinement_min_improvement_rate >= 1,
        "iterative_refinement_min_improvement_rate must be >= 1",
    )
    check(
        self.iterative_refinement_static_regularization_eps >= 0,
        "iterative_refinement_static_regularization_eps must be non-negative",
    )
    check(
        self.iterative_refinement_static_regularization_rel >= 0,
        "iterative_refinement_static_regularization_rel must be non-negative",
    )
    check(
        self.custom_term_cb is None or callable(self.custom_term_cb),
        "custom_term_cb must be callable or None",
    )
    return errors


def default_settings() -> Settings:
  """Returns a fully populated Settings value with the default options."""
  return Settings()

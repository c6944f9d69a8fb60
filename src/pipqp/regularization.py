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
"""Adaptive proximal regularization."""

import logging

import numpy as np

from .settings import Settings

# Required relative decrease of a residual to move a proximal center.
_PROGRESS_RATIO = 0.95
# Relative annealing speed when a proximal center is kept.
_SLOW_RATE = 0.666
# Annealing rate used when there is no complementarity to measure.
_NO_CONE_RATE = 0.9
_RETRY_FACTOR = 100.0


class RegularizationController:
  """Maintains the proximal parameters rho (primal) and delta (dual).

  The primal proximal center zeta is moved to x when the dual residual makes
  progress, after which rho shrinks at the rate mu shrinks. The dual centers
  (lambda, nu, nu_lb, nu_ub) move when the primal residual makes progress and
  drive delta. Neither parameter drops below `reg_limit`, which switches to
  `reg_finetune_lower_limit` once the centers stop moving.
  """

  def __init__(self, settings: Settings):
    self.settings = settings
    self.rho = settings.rho_init
    self.delta = settings.delta_init
    self.reg_limit = settings.reg_lower_limit
    self.primal_prox_inf = np.inf
    self.dual_prox_inf = np.inf
    self.no_primal_update = 0
    self.no_dual_update = 0
    # Consecutive iterations in which the centers were kept.
    self.primal_stall = 0
    self.dual_stall = 0
    self.factor_retires = 0

  def update(
      self,
      primal_inf: float,
      dual_inf: float,
      mu: float,
      mu_prev: float,
      has_cones: bool,
  ) -> tuple[bool, bool]:
    """Anneals the regularization after an iteration.

    Args:
      primal_inf: Current primal residual (constraint violation).
      dual_inf: Current dual residual (stationarity).
      mu: Current barrier parameter.
      mu_prev: Barrier parameter of the previous iteration.
      has_cones: Whether the problem has inequality or box constraints.

    Returns:
      A tuple (update_primal_center, update_dual_centers).
    """
    if not has_cones:
      mu_rate = _NO_CONE_RATE
    elif mu_prev > 0:
      mu_rate = float(np.clip((mu_prev - mu) / mu_prev, 0.0, 1.0))
    else:
      mu_rate = 0.0

    update_primal = dual_inf < _PROGRESS_RATIO * self.dual_prox_inf
    if update_primal:
      self.dual_prox_inf = dual_inf
      self.rho = max(self.rho * (1.0 - mu_rate), self.reg_limit)
      self.primal_stall = 0
    else:
      self.no_primal_update += 1
      self.primal_stall += 1
      self.rho = max(self.rho * (1.0 - _SLOW_RATE * mu_rate), self.reg_limit)

    update_dual = primal_inf < _PROGRESS_RATIO * self.primal_prox_inf
    if update_dual:
      self.primal_prox_inf = primal_inf
      self.delta = max(self.delta * (1.0 - mu_rate), self.reg_limit)
      self.dual_stall = 0
    else:
      self.no_dual_update += 1
      self.dual_stall += 1
      self.delta = max(
          self.delta * (1.0 - _SLOW_RATE * mu_rate), self.reg_limit
      )

    finetune = self.settings.reg_finetune_lower_limit
    if self.reg_limit != finetune and (
        (
            self.no_primal_update
            > self.settings.reg_finetune_primal_update_threshold
            and self.rho == self.reg_limit
        )
        or (
            self.no_dual_update
            > self.settings.reg_finetune_dual_update_threshold
            and self.delta == self.reg_limit
        )
    ):
      logging.debug(
          "Regularization stalled at %e, lowering the limit to %e.",
          self.reg_limit,
          finetune,
      )
      self.reg_limit = finetune
      self.no_primal_update = 0
      self.no_dual_update = 0

    return update_primal, update_dual

  def escalate(self) -> bool:
    """Increases the regularization after a failed factorization.

    Returns:
      False if the retry budget is exhausted.
    """
    if self.factor_retires >= self.settings.max_factor_retires:
      return False
    self.factor_retires += 1
    self.rho *= _RETRY_FACTOR
    self.delta *= _RETRY_FACTOR
    self.reg_limit = min(10.0 * self.reg_limit, self.settings.eps_abs)
    logging.debug(
        "Factorization retry %d: rho=%e, delta=%e, reg_limit=%e",
        self.factor_retires,
        self.rho,
        self.delta,
        self.reg_limit,
    )
    return True

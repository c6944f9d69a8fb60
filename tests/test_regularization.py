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

"""Tests for the proximal regularization controller."""

import numpy as np
from pipqp import regularization
from pipqp.settings import Settings
import pytest


def _controller(**kwargs):
  return regularization.RegularizationController(Settings(**kwargs))


def test_initial_state():
  reg = _controller(rho_init=1e-5, delta_init=1e-3)
  assert reg.rho == 1e-5
  assert reg.delta == 1e-3
  assert reg.reg_limit == Settings().reg_lower_limit
  assert reg.primal_prox_inf == np.inf and reg.dual_prox_inf == np.inf
  assert reg.factor_retires == 0


def test_progress_moves_centers_at_mu_rate():
  reg = _controller()
  assert reg.update(1.0, 2.0, mu=0.5, mu_prev=1.0, has_cones=True) == (
      True,
      True,
  )
  assert reg.rho == pytest.approx(0.5e-6)
  assert reg.delta == pytest.approx(0.5e-4)
  assert reg.primal_prox_inf == 1.0
  assert reg.dual_prox_inf == 2.0

  # Less than a 5% decrease is not progress.
  assert reg.update(0.96, 1.95, mu=0.25, mu_prev=0.5, has_cones=True) == (
      False,
      False,
  )
  assert reg.rho == pytest.approx(0.5e-6 * (1 - 0.666 * 0.5))
  assert reg.delta == pytest.approx(0.5e-4 * (1 - 0.666 * 0.5))
  assert reg.no_primal_update == 1 and reg.no_dual_update == 1
  assert reg.primal_stall == 1 and reg.dual_stall == 1
  assert reg.primal_prox_inf == 1.0

  # Progress on one residual only.
  assert reg.update(0.5, 1.95, mu=0.25, mu_prev=0.25, has_cones=True) == (
      False,
      True,
  )
  assert reg.dual_stall == 0
  assert reg.primal_stall == 2


def test_mu_increase_keeps_regularization():
  reg = _controller()
  reg.update(1.0, 1.0, mu=2.0, mu_prev=1.0, has_cones=True)
  assert reg.rho == 1e-6
  assert reg.delta == 1e-4


def test_no_cones_uses_fixed_rate():
  reg = _controller()
  reg.update(1.0, 1.0, mu=0.0, mu_prev=0.0, has_cones=False)
  assert reg.rho == pytest.approx(1e-7)
  assert reg.delta == pytest.approx(1e-5)


def test_regularization_is_floored():
  reg = _controller(reg_lower_limit=1e-9, reg_finetune_lower_limit=1e-12)
  reg.update(1.0, 1.0, mu=0.0, mu_prev=1.0, has_cones=True)
  assert reg.rho == 1e-9
  assert reg.delta == 1e-9


def test_finetune_limit_after_stall():
  reg = _controller(
      reg_lower_limit=1e-10,
      reg_finetune_lower_limit=1e-13,
      reg_finetune_dual_update_threshold=1,
  )
  reg.update(1.0, 1.0, mu=0.0, mu_prev=1.0, has_cones=True)
  assert reg.delta == 1e-10

  reg.update(1.0, 1.0, mu=0.0, mu_prev=1.0, has_cones=True)
  assert reg.reg_limit == 1e-10
  reg.update(1.0, 1.0, mu=0.0, mu_prev=1.0, has_cones=True)
  assert reg.reg_limit == 1e-13
  assert reg.no_primal_update == 0 and reg.no_dual_update == 0
  assert reg.dual_stall == 2

  reg.update(1.0, 1.0, mu=0.0, mu_prev=1.0, has_cones=True)
  assert reg.rho == pytest.approx(1e-10 * (1 - 0.666))
  assert reg.delta == pytest.approx(1e-10 * (1 - 0.666))


def test_escalate():
  reg = _controller(max_factor_retires=2, eps_abs=1e-8)
  assert reg.escalate()
  assert reg.rho == pytest.approx(1e-4)
  assert reg.delta == pytest.approx(1e-2)
  assert reg.reg_limit == pytest.approx(1e-9)
  assert reg.escalate()
  assert reg.reg_limit == pytest.approx(1e-8)
  assert reg.factor_retires == 2

  assert not reg.escalate()
  assert reg.factor_retires == 2
  assert reg.rho == pytest.approx(1e-2)


def test_escalate_without_budget():
  reg = _controller(max_factor_retires=0)
  assert not reg.escalate()
  assert reg.rho == 1e-6

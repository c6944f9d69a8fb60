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

"""Tests for the reduced KKT systems."""

import numpy as np
from pipqp import data as data_lib
from pipqp import direct
from pipqp import kkt as kkt_lib
from pipqp.settings import Settings
import pytest
from scipy import sparse


def _problem(kind, random_state=0):
  """A small QP with equalities, inequalities and partial box bounds."""
  rng = np.random.default_rng(random_state)
  n, p, m = 6, 2, 4
  q = rng.normal(size=(n, n))
  p_mat = q.T @ q / n
  a = rng.normal(size=(p, n))
  g = rng.normal(size=(m, n))
  x_lb = np.array([-1.0, -np.inf, 0.0, -np.inf, -2.0, -np.inf])
  x_ub = np.array([1.0, np.inf, np.inf, 3.0, np.inf, np.inf])
  args = (rng.normal(size=n), a, rng.normal(size=p), g, rng.normal(size=m))
  if kind == 'dense':
    return data_lib.dense_data(p_mat, *args, x_lb=x_lb, x_ub=x_ub)
  args = (
      args[0], sparse.csc_matrix(a), args[2], sparse.csc_matrix(g), args[4]
  )
  return data_lib.sparse_data(
      sparse.csc_matrix(p_mat), *args, x_lb=x_lb, x_ub=x_ub
  )


def _system(kind, qp, settings=None):
  settings = settings or Settings()
  if kind == 'dense':
    return kkt_lib.DenseKktSystem(qp, settings)
  return kkt_lib.SparseKktSystem(qp, settings, direct.ScipySolver())


def _scalings(qp, random_state=1):
  rng = np.random.default_rng(random_state)
  pos = lambda size: rng.uniform(0.1, 2.0, size=size)
  return dict(
      s=pos(qp.m),
      z=pos(qp.m),
      s_lb=pos(qp.n_lb),
      z_lb=pos(qp.n_lb),
      s_ub=pos(qp.n_ub),
      z_ub=pos(qp.n_ub),
  )


def _rhs(qp, random_state=2):
  rng = np.random.default_rng(random_state)
  return dict(
      rx=rng.normal(size=qp.n),
      ry=rng.normal(size=qp.p),
      rz=rng.normal(size=qp.m),
      rz_lb=rng.normal(size=qp.n_lb),
      rz_ub=rng.normal(size=qp.n_ub),
      rs=rng.normal(size=qp.m),
      rs_lb=rng.normal(size=qp.n_lb),
      rs_ub=rng.normal(size=qp.n_ub),
  )


def _assert_newton_equations(qp, d, rho, delta, sc, rhs, atol=1e-8):
  """Checks the direction against the unreduced Newton system."""
  box = np.zeros(qp.n)
  box[qp.x_lb_idx] -= d.z_lb
  box[qp.x_ub_idx] += d.z_ub
  np.testing.assert_allclose(
      qp.P @ d.x + rho * d.x + qp.A.T @ d.y + qp.G.T @ d.z + box,
      rhs['rx'],
      atol=atol,
  )
  np.testing.assert_allclose(qp.A @ d.x - delta * d.y, rhs['ry'], atol=atol)
  np.testing.assert_allclose(
      qp.G @ d.x - delta * d.z + d.s, rhs['rz'], atol=atol
  )
  np.testing.assert_allclose(
      -d.x[qp.x_lb_idx] + d.s_lb - delta * d.z_lb, rhs['rz_lb'], atol=atol
  )
  np.testing.assert_allclose(
      d.x[qp.x_ub_idx] + d.s_ub - delta * d.z_ub, rhs['rz_ub'], atol=atol
  )
  np.testing.assert_allclose(
      sc['z'] * d.s + sc['s'] * d.z, rhs['rs'], atol=atol
  )
  np.testing.assert_allclose(
      sc['z_lb'] * d.s_lb + sc['s_lb'] * d.z_lb, rhs['rs_lb'], atol=atol
  )
  np.testing.assert_allclose(
      sc['z_ub'] * d.s_ub + sc['s_ub'] * d.z_ub, rhs['rs_ub'], atol=atol
  )


@pytest.mark.parametrize('kind', ['dense', 'sparse'])
def test_solve_satisfies_newton_system(kind):
  qp = _problem(kind)
  system = _system(kind, qp)
  sc, rhs = _scalings(qp), _rhs(qp)
  rho, delta = 1e-3, 1e-2

  system.update_scalings(rho, delta, **sc)
  assert system.factorize()
  d, stats = system.solve(**rhs)

  assert stats['status'] == 'converged'
  assert stats['solves'] >= 1
  assert not system.static_reg_active
  _assert_newton_equations(qp, d, rho, delta, sc, rhs)


def test_dense_and_sparse_directions_agree():
  rho, delta = 1e-4, 1e-3
  directions = []
  for kind in ('dense', 'sparse'):
    qp = _problem(kind)
    system = _system(kind, qp)
    system.update_scalings(rho, delta, **_scalings(qp))
    assert system.factorize()
    directions.append(system.solve(**_rhs(qp))[0])

  for dense_v, sparse_v in zip(*directions):
    np.testing.assert_allclose(dense_v, sparse_v, atol=1e-8)


@pytest.mark.parametrize('kind', ['dense', 'sparse'])
def test_static_regularization_is_refined_away(kind):
  """A tiny delta is floored in the factorization, refinement recovers it."""
  p_mat = np.eye(2)
  a = np.array([[1.0, 1.0]])
  if kind == 'dense':
    qp = data_lib.dense_data(p_mat, np.zeros(2), a, [1.0])
  else:
    qp = data_lib.sparse_data(
        sparse.csc_matrix(p_mat), np.zeros(2), sparse.csc_matrix(a), [1.0]
    )
  system = _system(kind, qp)
  sc, rhs = _scalings(qp), _rhs(qp)
  rho, delta = 1e-6, 1e-12

  system.update_scalings(rho, delta, **sc)
  assert system.static_reg_active
  assert system.factorize()
  d, stats = system.solve(**rhs)

  assert stats['status'] == 'converged'
  assert stats['solves'] >= 2
  _assert_newton_equations(qp, d, rho, delta, sc, rhs)


@pytest.mark.parametrize('kind', ['dense', 'sparse'])
def test_refinement_always_enabled(kind):
  qp = _problem(kind)
  settings = Settings(iterative_refinement_always_enabled=True)
  system = _system(kind, qp, settings)
  system.update_scalings(1e-3, 1e-2, **_scalings(qp))
  assert system.factorize()
  _, stats = system.solve(**_rhs(qp))
  assert stats['solves'] >= 2


def test_dense_factorization_fails_on_indefinite_cost():
  qp = data_lib.dense_data(np.array([[1.0, 2.0], [2.0, 1.0]]), np.zeros(2))
  system = _system('dense', qp)
  system.update_scalings(1e-6, 1e-4, **_scalings(qp))
  assert not system.factorize()


def test_sparse_matvec_uses_exact_diagonal():
  qp = _problem('sparse')
  system = _system('sparse', qp)
  system.update_scalings(1e-3, 1e-2, **_scalings(qp))
  assert system.factorize()
  v = np.random.default_rng(3).normal(size=qp.n + qp.p + qp.m)
  expected = kkt_lib.KktSystem.matvec(system, v)
  np.testing.assert_allclose(system.matvec(v), expected, atol=1e-12)


class _RecordingSolver(direct.ScipySolver):
  """Records the diagonal of every matrix handed to the backend."""

  def __init__(self):
    super().__init__()
    self.diagonals = []

  def update(self, kkt):
    self.diagonals.append(kkt.diagonal().copy())
    super().update(kkt)


def _tiny(a):
  return data_lib.sparse_data(
      sparse.csc_matrix(np.eye(2)),
      np.zeros(2),
      sparse.csc_matrix(np.array(a, dtype=float)),
      [1.0],
  )


def test_sparse_backend_gets_floored_diagonal():
  qp = _tiny([[1.0, 1.0]])
  backend = _RecordingSolver()
  system = kkt_lib.SparseKktSystem(qp, Settings(), backend)
  system.update_scalings(1e-6, 1e-12, **_scalings(qp))
  assert system.static_reg_active
  assert system.factorize()

  np.testing.assert_array_equal(backend.diagonals[-1], system.reg_diag)
  np.testing.assert_array_equal(system.kkt.diagonal(), system.true_diag)


@pytest.mark.parametrize('kind', ['dense', 'sparse'])
def test_update_data_matches_new_system(kind):
  old_qp, new_qp = _problem(kind, random_state=0), _problem(kind, 4)
  system = _system(kind, old_qp)
  backend = getattr(system, 'solver', None)
  fresh = _system(kind, new_qp)
  sc, rhs = _scalings(new_qp), _rhs(new_qp)
  rho, delta = 1e-3, 1e-2

  system.update_data(new_qp)
  directions = []
  for s in (system, fresh):
    s.update_scalings(rho, delta, **sc)
    assert s.factorize()
    directions.append(s.solve(**rhs)[0])

  assert getattr(system, 'solver', None) is backend
  for updated_v, fresh_v in zip(*directions):
    np.testing.assert_allclose(updated_v, fresh_v, atol=1e-10)
  _assert_newton_equations(new_qp, directions[0], rho, delta, sc, rhs)


def test_sparse_update_data_rejects_new_pattern():
  system = _system('sparse', _tiny([[1.0, 1.0]]))
  with pytest.raises(ValueError):
    system.update_data(_tiny([[1.0, 0.0]]))

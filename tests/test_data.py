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

"""Tests for problem data validation and updates."""

import numpy as np
from pipqp import data as data_lib
import pytest
from scipy import sparse

_MAKERS = {
    'dense': (data_lib.dense_data, np.asarray),
    'sparse': (data_lib.sparse_data, sparse.csc_matrix),
}


def _make(kind, p, c, a=None, b=None, g=None, h=None, **kwargs):
  make, mat = _MAKERS[kind]
  as_mat = lambda v: None if v is None else mat(np.asarray(v, dtype=float))
  return make(as_mat(p), c, as_mat(a), b, as_mat(g), h, **kwargs)


def _dense(v):
  return v.toarray() if sparse.issparse(v) else v


@pytest.mark.parametrize('kind', _MAKERS)
def test_missing_blocks_are_empty(kind):
  qp = _make(kind, None, [1.0, 2.0, 3.0])
  assert (qp.n, qp.p, qp.m) == (3, 0, 0)
  assert qp.A.shape == (0, 3) and qp.G.shape == (0, 3)
  np.testing.assert_array_equal(_dense(qp.P), np.zeros((3, 3)))
  assert qp.n_lb == 0 and qp.n_ub == 0


@pytest.mark.parametrize('kind', _MAKERS)
def test_symmetric_from_upper_triangle(kind):
  p = [[1.0, 2.0, 0.0], [-5.0, 3.0, 4.0], [9.0, 9.0, 6.0]]
  qp = _make(kind, p, np.zeros(3))
  np.testing.assert_array_equal(
      _dense(qp.P), [[1.0, 2.0, 0.0], [2.0, 3.0, 4.0], [0.0, 4.0, 6.0]]
  )


def test_sparse_explicit_zeros_are_kept():
  p = sparse.csc_matrix(
      (np.array([0.0, 1.0]), (np.array([0, 1]), np.array([0, 1]))),
      shape=(2, 2),
  )
  qp = data_lib.sparse_data(p, np.zeros(2))
  assert qp.P.nnz == 2


def test_sparse_requires_sparse_matrices():
  with pytest.raises(TypeError):
    data_lib.sparse_data(np.eye(2), np.zeros(2))


@pytest.mark.parametrize('kind', _MAKERS)
@pytest.mark.parametrize(
    'kwargs',
    (
        dict(p=np.eye(3)),
        dict(a=np.ones((1, 3)), b=[1.0, 2.0]),
        dict(g=np.ones((3, 2)), h=[1.0, 2.0]),
        dict(a=np.ones((1, 2)), b=None),
        dict(g=None, h=[1.0]),
        dict(x_lb=[0.0, 0.0, 0.0]),
        dict(x_lb=[1.0, 0.0], x_ub=[0.0, 1.0]),
        dict(x_ub=[np.nan, 1.0]),
        dict(x_lb=[np.inf, 0.0]),
        dict(x_ub=[-np.inf, 1.0]),
    ),
)
def test_invalid_data(kind, kwargs):
  args = dict(p=np.eye(2), a=None, b=None, g=None, h=None)
  args.update(kwargs)
  with pytest.raises(ValueError):
    _make(kind, c=np.zeros(2), **args)


@pytest.mark.parametrize('kind', _MAKERS)
def test_no_variables(kind):
  with pytest.raises(ValueError):
    _make(kind, np.zeros((0, 0)), np.zeros(0))


@pytest.mark.parametrize('kind', _MAKERS)
def test_non_finite_cost(kind):
  with pytest.raises(ValueError):
    _make(kind, None, [1.0, np.inf])


@pytest.mark.parametrize('kind', _MAKERS)
def test_infinite_bounds_are_absent(kind):
  x_lb = [-np.inf, -1e30, -1e31, -1.0]
  x_ub = [np.inf, 1e30, 2.0, 1e29]
  qp = _make(kind, None, np.zeros(4), x_lb=x_lb, x_ub=x_ub)
  np.testing.assert_array_equal(qp.x_lb_idx, [3])
  np.testing.assert_array_equal(qp.x_lb, [-1.0])
  np.testing.assert_array_equal(qp.x_ub_idx, [2, 3])
  np.testing.assert_array_equal(qp.x_ub, [2.0, 1e29])


def test_equal_bounds_are_valid():
  qp = data_lib.dense_data(None, np.zeros(2), x_lb=[1.0, 0.0], x_ub=[1.0, 2.0])
  assert qp.n_lb == 2 and qp.n_ub == 2


@pytest.mark.parametrize('kind', _MAKERS)
def test_update_replaces_fields(kind):
  qp = _make(
      kind, np.eye(2), [1.0, 1.0], [[1.0, 1.0]], [1.0], x_lb=[0.0, -np.inf]
  )
  _, mat = _MAKERS[kind]
  new, matrices_changed = qp.update(c=[2.0, 3.0], x_lb=[-1.0, -np.inf])
  assert not matrices_changed
  np.testing.assert_array_equal(new.c, [2.0, 3.0])
  np.testing.assert_array_equal(new.x_lb, [-1.0])
  # The original is untouched.
  np.testing.assert_array_equal(qp.c, [1.0, 1.0])

  new, matrices_changed = qp.update(
      P=mat(np.array([[2.0, 0.0], [0.0, 3.0]])), b=[3.0]
  )
  assert matrices_changed
  np.testing.assert_array_equal(_dense(new.P), [[2.0, 0.0], [0.0, 3.0]])
  np.testing.assert_array_equal(new.b, [3.0])


@pytest.mark.parametrize('kind', _MAKERS)
@pytest.mark.parametrize(
    'kwargs',
    (
        dict(c=[1.0]),
        dict(b=[1.0, 2.0]),
        dict(x_lb=[0.0, 0.0]),
        dict(x_ub=[-1.0, np.inf]),
    ),
)
def test_update_rejects_invalid(kind, kwargs):
  qp = _make(
      kind, np.eye(2), [1.0, 1.0], [[1.0, 1.0]], [1.0],
      x_lb=[0.0, -np.inf], x_ub=[1.0, np.inf],
  )
  with pytest.raises(ValueError):
    qp.update(**kwargs)


def test_update_dense_matrix_shape():
  qp = data_lib.dense_data(np.eye(2), np.zeros(2), np.ones((1, 2)), [1.0])
  with pytest.raises(ValueError):
    qp.update(A=np.ones((2, 2)))


def test_sparse_update_requires_same_pattern():
  qp = data_lib.sparse_data(
      sparse.csc_matrix(np.diag([1.0, 2.0])),
      np.zeros(2),
      sparse.csc_matrix(np.array([[1.0, 0.0]])),
      [1.0],
  )
  with pytest.raises(ValueError, match='Sparsity pattern'):
    qp.update(A=sparse.csc_matrix(np.array([[1.0, 1.0]])))
  with pytest.raises(ValueError, match='Sparsity pattern'):
    qp.update(P=sparse.csc_matrix(np.ones((2, 2))))

  new, matrices_changed = qp.update(
      A=sparse.csc_matrix(np.array([[5.0, 0.0]]))
  )
  assert matrices_changed
  np.testing.assert_array_equal(new.A.toarray(), [[5.0, 0.0]])


def test_sparse_update_lower_triangle_is_ignored():
  qp = data_lib.sparse_data(
      sparse.csc_matrix(np.array([[1.0, 1.0], [0.0, 1.0]])), np.zeros(2)
  )
  new, _ = qp.update(
      P=sparse.csc_matrix(np.array([[2.0, 3.0], [7.0, 2.0]]))
  )
  np.testing.assert_array_equal(new.P.toarray(), [[2.0, 3.0], [3.0, 2.0]])

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
"""QP problem data in dense or sparse layout."""

import dataclasses
from typing import Any

import numpy as np

from . import linalg

# Bounds with a magnitude of at least this value are treated as absent.
INF = 1e30


@dataclasses.dataclass
class ProblemData:
  """Data of the QP.

    min. (1/2) x.T @ P @ x + c.T @ x
    s.t. A @ x = b
         G @ x <= h
         x_lb <= x <= x_ub

  Only the finite bounds are stored: `x_lb[i]` bounds `x[x_lb_idx[i]]`.
  """

  la: Any  # linalg.DenseLinalg | linalg.SparseLinalg
  P: Any
  c: np.ndarray
  A: Any
  b: np.ndarray
  G: Any
  h: np.ndarray
  x_lb: np.ndarray
  x_lb_idx: np.ndarray
  x_ub: np.ndarray
  x_ub_idx: np.ndarray

  @property
  def n(self) -> int:
    return self.c.shape[0]

  @property
  def p(self) -> int:
    return self.b.shape[0]

  @property
  def m(self) -> int:
    return self.h.shape[0]

  @property
  def n_lb(self) -> int:
    return self.x_lb_idx.shape[0]

  @property
  def n_ub(self) -> int:
    return self.x_ub_idx.shape[0]

  def copy(self) -> "ProblemData":
    return dataclasses.replace(
        self,
        P=self.P.copy(),
        c=self.c.copy(),
        A=self.A.copy(),
        b=self.b.copy(),
        G=self.G.copy(),
        h=self.h.copy(),
        x_lb=self.x_lb.copy(),
        x_ub=self.x_ub.copy(),
    )

  def update(
      self,
      *,
      P=None,
      c=None,
      A=None,
      b=None,
      G=None,
      h=None,
      x_lb=None,
      x_ub=None,
  ) -> tuple["ProblemData", bool]:
    """Returns a copy with the given fields replaced.

    Everything is validated before anything is replaced, so a failing update
    leaves this object untouched.

    Returns:
      A tuple of the updated data and whether any matrix changed.

    Raises:
      ValueError: If a field does not match the dimensions of the problem, or
        a sparse matrix changes its sparsity pattern.
    """
    n, p, m = self.n, self.p, self.m
    new = {}
    if P is not None:
      new["P"] = self.la.symmetric_from_upper(
          self.la.matrix(P, (n, n), "P")
      )
    if A is not None:
      new["A"] = self.la.matrix(A, (p, n), "A")
    if G is not None:
      new["G"] = self.la.matrix(G, (m, n), "G")
    for name in ("P", "A", "G"):
      if name in new and not self.la.same_pattern(
          getattr(self, name), new[name]
      ):
        raise ValueError(
            f"Sparsity pattern of {name} changed; only values may be updated."
        )
    if c is not None:
      new["c"] = _vector(c, n, "c")
    if b is not None:
      new["b"] = _vector(b, p, "b")
    if h is not None:
      new["h"] = _vector(h, m, "h")
    if x_lb is not None:
      lb, lb_idx = _bounds(x_lb, n, "x_lb", lower=True)
      if not np.array_equal(lb_idx, self.x_lb_idx):
        raise ValueError("The set of finite entries of x_lb cannot change.")
      new["x_lb"] = lb
    if x_ub is not None:
      ub, ub_idx = _bounds(x_ub, n, "x_ub", lower=False)
      if not np.array_equal(ub_idx, self.x_ub_idx):
        raise ValueError("The set of finite entries of x_ub cannot change.")
      new["x_ub"] = ub
    _check_bounds_order(
        new.get("x_lb", self.x_lb),
        self.x_lb_idx,
        new.get("x_ub", self.x_ub),
        self.x_ub_idx,
        n,
    )
    matrices_changed = any(name in new for name in ("P", "A", "G"))
    return dataclasses.replace(self, **new), matrices_changed


def _vector(v, size: int, name: str) -> np.ndarray:
  v = np.array(v, dtype=np.float64).ravel()
  if v.shape != (size,):
    raise ValueError(f"{name} must have shape ({size},), got {v.shape}")
  if not np.all(np.isfinite(v)):
    raise ValueError(f"{name} contains non-finite values")
  return v


def _bounds(v, n: int, name: str, lower: bool):
  """Returns the finite bounds and their indices."""
  v = np.array(v, dtype=np.float64).ravel()
  if v.shape != (n,):
    raise ValueError(f"{name} must have shape ({n},), got {v.shape}")
  if np.any(np.isnan(v)):
    raise ValueError(f"{name} contains NaN")
  finite = v > -INF if lower else v < INF
  idx = np.flatnonzero(finite)
  if np.any(np.isinf(v[idx])):
    side = "+inf" if lower else "-inf"
    raise ValueError(f"{name} must not contain {side}")
  return v[idx], idx


def _check_bounds_order(x_lb, x_lb_idx, x_ub, x_ub_idx, n):
  lb = np.full(n, -np.inf)
  ub = np.full(n, np.inf)
  lb[x_lb_idx] = x_lb
  ub[x_ub_idx] = x_ub
  if np.any(lb > ub):
    raise ValueError("x_lb must be less than or equal to x_ub.")


def make_problem_data(
    la, P, c, A=None, b=None, G=None, h=None, x_lb=None, x_ub=None
) -> ProblemData:
  """Validates user data and returns a ProblemData.

  Args:
    la: The matrix operations for the layout (dense or sparse).
    P: Cost matrix (n x n); only its upper triangle is read. Zero if None.
    c: Cost vector (n,).
    A: Equality constraint matrix (p x n). No equalities if None.
    b: Equality right-hand side (p,).
    G: Inequality constraint matrix (m x n). No inequalities if None.
    h: Inequality right-hand side (m,).
    x_lb: Lower bounds (n,); entries <= -1e30 are absent.
    x_ub: Upper bounds (n,); entries >= 1e30 are absent.

  Returns:
    The validated problem data.

  Raises:
    ValueError: If the dimensions are inconsistent or data is not finite.
  """
  c = np.array(c, dtype=np.float64).ravel()
  n = c.shape[0]
  if n == 0:
    raise ValueError("The problem must have at least one variable.")
  if not np.all(np.isfinite(c)):
    raise ValueError("c contains non-finite values")
  if (A is None) != (b is None):
    raise ValueError("A and b must be given together.")
  if (G is None) != (h is None):
    raise ValueError("G and h must be given together.")

  b = np.zeros(0) if b is None else np.array(b, dtype=np.float64).ravel()
  h = np.zeros(0) if h is None else np.array(h, dtype=np.float64).ravel()
  p, m = b.shape[0], h.shape[0]

  P = la.zeros(n, n) if P is None else la.matrix(P, (n, n), "P")
  A = la.zeros(p, n) if A is None else la.matrix(A, (p, n), "A")
  G = la.zeros(m, n) if G is None else la.matrix(G, (m, n), "G")

  if x_lb is None:
    x_lb, x_lb_idx = np.zeros(0), np.zeros(0, dtype=np.int64)
  else:
    x_lb, x_lb_idx = _bounds(x_lb, n, "x_lb", lower=True)
  if x_ub is None:
    x_ub, x_ub_idx = np.zeros(0), np.zeros(0, dtype=np.int64)
  else:
    x_ub, x_ub_idx = _bounds(x_ub, n, "x_ub", lower=False)
  _check_bounds_order(x_lb, x_lb_idx, x_ub, x_ub_idx, n)

  return ProblemData(
      la=la,
      P=la.symmetric_from_upper(P),
      c=c,
      A=A,
      b=_vector(b, p, "b"),
      G=G,
      h=_vector(h, m, "h"),
      x_lb=x_lb,
      x_lb_idx=x_lb_idx,
      x_ub=x_ub,
      x_ub_idx=x_ub_idx,
  )


def dense_data(*args, **kwargs) -> ProblemData:
  return make_problem_data(linalg.DENSE, *args, **kwargs)


def sparse_data(*args, **kwargs) -> ProblemData:
  return make_problem_data(linalg.SPARSE, *args, **kwargs)

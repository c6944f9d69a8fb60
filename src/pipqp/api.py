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
"""Handle based interface for embedding the solver in other runtimes.

A `Workspace` owns exactly one dense or sparse solver, chosen at setup:

  ws = api.setup_sparse(P, c, A, b, G, h, x_lb, x_ub)
  status = api.solve(ws)
  x = ws.result.x
  api.update(ws, c=new_c)
  api.solve(ws)
  api.cleanup(ws)
"""

import dataclasses
from typing import Optional

import numpy as np
import scipy.sparse as sp

from . import _Solver, DenseSolver, LinearSolver, SparseSolver
from .results import Info, Result, Status
from .settings import Settings


def csc_matrix(m: int, n: int, nnz: int, p, i, x) -> sp.csc_matrix:
  """Builds a CSC matrix from its raw arrays.

  Args:
    m: Number of rows.
    n: Number of columns.
    nnz: Number of stored entries.
    p: Column pointers, length n + 1.
    i: Row indices, length nnz.
    x: Values, length nnz.

  Returns:
    The matrix, with its arrays copied.

  Raises:
    ValueError: If the arrays are inconsistent with the dimensions.
  """
  p = np.array(p, dtype=np.int64).ravel()
  i = np.array(i, dtype=np.int64).ravel()
  x = np.array(x, dtype=np.float64).ravel()
  if m < 0 or n < 0 or nnz < 0:
    raise ValueError(f"Invalid dimensions m={m}, n={n}, nnz={nnz}.")
  if p.shape != (n + 1,):
    raise ValueError(f"Column pointers must have length {n + 1}.")
  if i.shape != (nnz,) or x.shape != (nnz,):
    raise ValueError(f"Row indices and values must have length {nnz}.")
  if p[0] != 0 or p[-1] != nnz or np.any(np.diff(p) < 0):
    raise ValueError("Column pointers must be non-decreasing from 0 to nnz.")
  if nnz and (np.min(i) < 0 or np.max(i) >= m):
    raise ValueError(f"Row indices must be in [0, {m}).")
  return sp.csc_matrix((x, i, p), shape=(m, n))


@dataclasses.dataclass
class Workspace:
  """Opaque handle owning one solver instance."""

  solver: Optional[_Solver]
  is_dense: bool
  n: int
  p: int
  m: int

  @property
  def result(self) -> Result:
    return self.solver.result

  @property
  def info(self) -> Info:
    return self.solver.result.info


def _setup(
    solver, P, c, A, b, G, h, x_lb, x_ub, settings: Optional[Settings]
) -> Workspace:
  if settings is not None:
    solver.settings = dataclasses.replace(settings)
  solver.setup(P, c, A, b, G, h, x_lb, x_ub)
  n, p, m = solver.dims
  return Workspace(solver=solver, is_dense=solver.is_dense, n=n, p=p, m=m)


def setup_dense(
    P, c, A=None, b=None, G=None, h=None, x_lb=None, x_ub=None,
    settings: Optional[Settings] = None,
) -> Workspace:
  """Creates a workspace for a QP with dense data."""
  return _setup(
      DenseSolver(), P, c, A, b, G, h, x_lb, x_ub, settings
  )


def setup_sparse(
    P, c, A=None, b=None, G=None, h=None, x_lb=None, x_ub=None,
    settings: Optional[Settings] = None,
    linear_solver: LinearSolver = LinearSolver.SCIPY,
) -> Workspace:
  """Creates a workspace for a QP with sparse (CSC) data."""
  return _setup(
      SparseSolver(linear_solver), P, c, A, b, G, h, x_lb, x_ub,
      settings,
  )


def _check(workspace: Optional[Workspace]) -> Workspace:
  if workspace is None or workspace.solver is None:
    raise RuntimeError("The workspace is not set up.")
  return workspace


def update(
    workspace: Workspace,
    P=None, c=None, A=None, b=None, G=None, h=None, x_lb=None, x_ub=None,
    reuse_preconditioner: bool = True,
) -> None:
  """Updates the problem data, None leaves a field unchanged."""
  _check(workspace).solver.update(
      P=P, c=c, A=A, b=b, G=G, h=h, x_lb=x_lb, x_ub=x_ub,
      reuse_preconditioner=reuse_preconditioner,
  )


def solve(workspace: Workspace) -> Status:
  """Solves the problem, refreshing `workspace.result`."""
  return _check(workspace).solver.solve()


def get_settings(workspace: Workspace) -> Settings:
  """Returns a copy of the settings of the workspace."""
  return dataclasses.replace(_check(workspace).solver.settings)


def update_settings(workspace: Workspace, settings: Settings) -> None:
  """Replaces the settings, they are validated by the next `solve`."""
  _check(workspace).solver.settings = dataclasses.replace(settings)


def cleanup(workspace: Optional[Workspace]) -> None:
  """Releases the solver owned by the workspace. No-op for None."""
  if workspace is None or workspace.solver is None:
    return
  workspace.solver.free()
  workspace.solver = None

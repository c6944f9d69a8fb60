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
"""Direct factorization backends for sparse KKT matrices."""

import logging
from typing import Literal, Protocol

import numpy as np
import scipy.sparse as sp
import scipy.sparse.linalg  # pylint: disable=unused-import


class FactorizationError(Exception):
  """Raised when the KKT matrix cannot be factorized or solved."""


class LinearSolver(Protocol):
  """Protocol defining the interface for sparse direct solvers."""

  def update(self, kkt: sp.spmatrix) -> None:
    """Factorizes or refactorizes the KKT matrix.

    Raises:
      FactorizationError: If the factorization fails.
    """
    ...

  def solve(self, rhs: np.ndarray) -> np.ndarray:
    """Solves the linear system with the current factorization."""
    ...

  def format(self) -> str:
    """Returns the expected sparse matrix format (eg, 'csc' or 'csr')."""
    ...

  def free(self):
    pass


class ScipySolver(LinearSolver):
  """Wrapper around scipy.sparse.linalg.factorized."""

  def __init__(self):
    self.factorization = None

  def update(self, kkt: sp.spmatrix):
    try:
      # Use tocsc() to ensure correct format, though usually it's a cheap view.
      self.factorization = sp.linalg.factorized(kkt.tocsc())
    except RuntimeError as e:  # SuperLU reports singular factors this way.
      self.factorization = None
      raise FactorizationError(str(e)) from e

  def solve(self, rhs: np.ndarray) -> np.ndarray:
    return self.factorization(rhs)

  def format(self) -> Literal["csc"]:
    return "csc"

  def free(self):
    self.factorization = None


class QdldlSolver(LinearSolver):
  """Wrapper around qdldl.Solver for quasi-definite LDL factorization."""

  def __init__(self):
    import qdldl  # pylint: disable=g-import-not-at-top

    self.qdldl = qdldl
    self.factorization: qdldl.Solver | None = None

  def update(self, kkt: sp.spmatrix):
    try:
      if self.factorization is None:
        self.factorization = self.qdldl.Solver(kkt)
      else:
        self.factorization.update(kkt)
    except (ValueError, RuntimeError) as e:
      self.factorization = None
      raise FactorizationError(str(e)) from e

  def solve(self, rhs: np.ndarray) -> np.ndarray:
    return self.factorization.solve(rhs)

  def format(self) -> Literal["csc"]:
    return "csc"

  def free(self):
    self.factorization = None


class MklPardisoSolver(LinearSolver):
  """Wrapper around pydiso.mkl_solver.MKLPardisoSolver."""

  def __init__(self):
    import pydiso.mkl_solver  # pylint: disable=g-import-not-at-top

    self.mkl_solver = pydiso.mkl_solver
    self.factorization: pydiso.mkl_solver.MKLPardisoSolver | None = None

  def update(self, kkt: sp.spmatrix):
    try:
      if self.factorization is None:
        self.factorization = self.mkl_solver.MKLPardisoSolver(
            kkt, matrix_type="real_symmetric_indefinite"
        )
        # Recommended iparms for IPMs from Pardiso docs.
        self.factorization.set_iparm(10, 1)
        self.factorization.set_iparm(12, 1)
      else:
        self.factorization.refactor(kkt)
    except self.mkl_solver.PardisoError as e:
      logging.warning("PardisoError: %s", e)
      self.factorization = None
      raise FactorizationError(str(e)) from e

  def solve(self, rhs: np.ndarray) -> np.ndarray:
    try:
      return self.factorization.solve(rhs)
    except self.mkl_solver.PardisoError as e:
      raise FactorizationError(str(e)) from e

  def format(self) -> Literal["csr"]:
    return "csr"

  def free(self):
    self.factorization = None

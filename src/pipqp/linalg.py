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
"""Dense and compressed-sparse-column matrix operations.

The solver is written against the `Linalg` protocol below. Vectors are always
dense numpy arrays; only the matrices P, A and G change representation.
"""

from typing import Any, Protocol

import numpy as np
import scipy.sparse as sp


class Linalg(Protocol):
  """Matrix operations needed by the solver."""

  name: str

  def matrix(self, mat: Any, shape: tuple[int, int], name: str) -> Any:
    """Validates and copies user data into the native matrix format."""
    ...

  def zeros(self, rows: int, cols: int) -> Any:
    ...

  def symmetric_from_upper(self, mat: Any) -> Any:
    """Returns the full symmetric matrix defined by the upper triangle."""
    ...

  def scale(self, mat: Any, left: np.ndarray, right: np.ndarray) -> Any:
    """Returns diag(left) @ mat @ diag(right)."""
    ...

  def col_norms(self, mat: Any) -> np.ndarray:
    """Infinity norm of every column."""
    ...

  def row_norms(self, mat: Any) -> np.ndarray:
    """Infinity norm of every row."""
    ...

  def same_pattern(self, old: Any, new: Any) -> bool:
    """Whether `new` may replace `old` without changing the structure."""
    ...


def _check_shape(mat_shape, shape, name):
  if tuple(mat_shape) != tuple(shape):
    raise ValueError(f"{name} must have shape {shape}, got {mat_shape}")


class DenseLinalg:
  """Row-major dense matrices stored as numpy arrays."""

  name = "dense"

  def matrix(self, mat, shape, name):
    if sp.issparse(mat):
      mat = mat.toarray()
    try:
      mat = np.array(mat, dtype=np.float64, order="C")
    except (TypeError, ValueError) as e:
      raise TypeError(f"{name} must be a numeric matrix: {e}") from e
    if mat.ndim != 2:
      raise ValueError(f"{name} must be two dimensional, got {mat.ndim} dims")
    _check_shape(mat.shape, shape, name)
    if not np.all(np.isfinite(mat)):
      raise ValueError(f"{name} contains non-finite values")
    return mat

  def zeros(self, rows, cols):
    return np.zeros((rows, cols))

  def symmetric_from_upper(self, mat):
    return np.triu(mat) + np.triu(mat, 1).T

  def scale(self, mat, left, right):
    return left[:, None] * mat * right[None, :]

  def col_norms(self, mat):
    return np.max(np.abs(mat), axis=0, initial=0.0)

  def row_norms(self, mat):
    return np.max(np.abs(mat), axis=1, initial=0.0)

  def same_pattern(self, old, new):
    return old.shape == new.shape


class SparseLinalg:
  """Compressed-sparse-column matrices stored as scipy csc_matrix."""

  name = "sparse"

  def matrix(self, mat, shape, name):
    if not sp.issparse(mat):
      raise TypeError(f"{name} must be a scipy sparse matrix, got {type(mat)}")
    _check_shape(mat.shape, shape, name)
    mat = sp.csc_matrix(mat, dtype=np.float64, copy=True)
    mat.sum_duplicates()  # Also sorts the row indices.
    if not np.all(np.isfinite(mat.data)):
      raise ValueError(f"{name} contains non-finite values")
    return mat

  def zeros(self, rows, cols):
    return sp.csc_matrix((rows, cols), dtype=np.float64)

  def symmetric_from_upper(self, mat):
    # Built through COO so explicit zeros survive and the pattern is stable.
    upper = sp.triu(mat, format="coo")
    off = upper.row != upper.col
    rows = np.concatenate([upper.row, upper.col[off]])
    cols = np.concatenate([upper.col, upper.row[off]])
    data = np.concatenate([upper.data, upper.data[off]])
    full = sp.csc_matrix((data, (rows, cols)), shape=mat.shape)
    full.sort_indices()
    return full

  def scale(self, mat, left, right):
    out = mat.copy()
    cols = np.repeat(np.arange(mat.shape[1]), np.diff(mat.indptr))
    out.data *= left[out.indices] * right[cols]
    return out

  def col_norms(self, mat):
    if mat.nnz == 0:
      return np.zeros(mat.shape[1])
    return abs(mat).max(axis=0).toarray().ravel()

  def row_norms(self, mat):
    if mat.nnz == 0:
      return np.zeros(mat.shape[0])
    return abs(mat).max(axis=1).toarray().ravel()

  def same_pattern(self, old, new):
    return (
        old.shape == new.shape
        and old.nnz == new.nnz
        and np.array_equal(old.indptr, new.indptr)
        and np.array_equal(old.indices, new.indices)
    )


DENSE = DenseLinalg()
SPARSE = SparseLinalg()

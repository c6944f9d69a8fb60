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

"""Proximal interior point method for convex QPs with dense or sparse data."""

import dataclasses
import enum
import logging
import timeit
from typing import Any, Optional

import numpy as np

from . import data as data_lib
from . import direct
from . import ipm
from . import kkt as kkt_lib
from . import linalg
from . import preconditioner as preconditioner_lib
from . import regularization
from . import termination
from .results import Info, Result, Status
from .settings import Settings, default_settings

__version__ = "0.1.0"
_HEADER = """| iter |      pcost |      dcost |     pres |     dres |      gap |       mu |      rho |    delta |  pstep |  dstep |     time |"""
_SEPARA = """|------|------------|------------|----------|----------|----------|----------|----------|----------|--------|--------|----------|"""

INF = data_lib.INF
FactorizationError = direct.FactorizationError


class LinearSolver(enum.Enum):
  """Available sparse linear solvers."""

  SCIPY = direct.ScipySolver
  PARDISO = direct.MklPardisoSolver
  QDLDL = direct.QdldlSolver


_FOOTERS = {
    Status.SOLVED: "Solved",
    Status.PRIMAL_INFEASIBLE: "Primal infeasible",
    Status.DUAL_INFEASIBLE: "Dual infeasible",
    Status.NUMERICAL_ERROR: "Numerical error",
}


def _expand(v: np.ndarray, idx: np.ndarray, n: int, fill: float) -> np.ndarray:
  out = np.full(n, fill)
  out[idx] = v
  return out


class _Solver:
  """Proximal primal-dual interior point method for convex QPs.

  Solves the problem:
    min. (1/2) x.T @ P @ x + c.T @ x
    s.t. A @ x = b
         G @ x <= h
         x_lb <= x <= x_ub

  Only the upper triangle of P is read. Bounds beyond +-1e30 are ignored.

  Typical use:
    solver = pipqp.SparseSolver()
    solver.settings.eps_abs = 1e-9
    solver.setup(P, c, A, b, G, h, x_lb, x_ub)
    status = solver.solve()
    x = solver.result.x

  After `update`, the next `solve` is warm started from the previous solution
  if that solve succeeded.
  """

  _la: Any = None

  def __init__(self):
    self._settings = default_settings()
    self._qp: Optional[data_lib.ProblemData] = None
    self._scaled: Optional[data_lib.ProblemData] = None
    self._scaling: Optional[preconditioner_lib.RuizEquilibration] = None
    self._kkt: Optional[kkt_lib.KktSystem] = None
    self._result: Optional[Result] = None
    self._warm_start: Optional[Result] = None
    self._setup_time = 0.0
    self._update_time = 0.0

  @property
  def settings(self) -> Settings:
    return self._settings

  @settings.setter
  def settings(self, settings: Settings):
    if not isinstance(settings, Settings):
      raise TypeError(f"Expected Settings, got {type(settings).__name__}.")
    self._settings = settings

  @property
  def result(self) -> Optional[Result]:
    """Result of the last solve, None before `setup`."""
    return self._result

  @property
  def is_dense(self) -> bool:
    return self._la is linalg.DENSE

  @property
  def dims(self) -> tuple[int, int, int]:
    """Number of variables, equalities and inequalities."""
    self._check_setup()
    return self._qp.n, self._qp.p, self._qp.m

  def _make_kkt(self, qp: data_lib.ProblemData) -> kkt_lib.KktSystem:
    raise NotImplementedError

  def _check_setup(self):
    if self._qp is None:
      raise RuntimeError("setup must be called first.")

  def setup(
      self,
      P,
      c,
      A=None,
      b=None,
      G=None,
      h=None,
      x_lb=None,
      x_ub=None,
  ) -> None:
    """Sets up the problem and computes its scaling.

    Args:
      P: Cost matrix (n x n), only the upper triangle is read. Zero if None.
      c: Cost vector (n,).
      A: Equality constraint matrix (p x n), None for no equalities.
      b: Equality right-hand side (p,).
      G: Inequality constraint matrix (m x n), None for no inequalities.
      h: Inequality right-hand side (m,).
      x_lb: Lower bounds (n,), None for no lower bounds.
      x_ub: Upper bounds (n,), None for no upper bounds.

    Raises:
      ValueError: If the dimensions are inconsistent.
      TypeError: If a matrix has an unsupported type.
    """
    start = timeit.default_timer()
    qp = data_lib.make_problem_data(self._la, P, c, A, b, G, h, x_lb, x_ub)
    if self._kkt is not None:
      self._kkt.free()
    self._qp = qp
    self._scaling = preconditioner_lib.RuizEquilibration(qp.n, qp.p, qp.m)
    self._scaling.compute(
        qp,
        self._settings.preconditioner_iter,
        self._settings.preconditioner_scale_cost,
    )
    self._scaled = self._scaling.scale_data(qp)
    self._kkt = self._make_kkt(self._scaled)
    self._warm_start = None
    self._result = Result.empty(qp.n, qp.p, qp.m)
    self._setup_time = timeit.default_timer() - start
    self._update_time = 0.0
    logging.debug(
        "Setup: n=%d, p=%d, m=%d, n_lb=%d, n_ub=%d",
        qp.n,
        qp.p,
        qp.m,
        qp.n_lb,
        qp.n_ub,
    )

  def update(
      self,
      P=None,
      c=None,
      A=None,
      b=None,
      G=None,
      h=None,
      x_lb=None,
      x_ub=None,
      reuse_preconditioner: bool = True,
  ) -> None:
    """Replaces some of the problem data, None leaves a field unchanged.

    Dimensions, sparsity patterns and the set of finite bounds are fixed at
    `setup`. Nothing is modified if the new data is rejected.

    Args:
      P: New cost matrix, only the upper triangle is read.
      c: New cost vector.
      A: New equality constraint matrix.
      b: New equality right-hand side.
      G: New inequality constraint matrix.
      h: New inequality right-hand side.
      x_lb: New lower bounds.
      x_ub: New upper bounds.
      reuse_preconditioner: If False, the scaling is recomputed from the new
        data.

    Raises:
      RuntimeError: If called before `setup`.
      ValueError: If the data does not match the problem set up.
    """
    self._check_setup()
    start = timeit.default_timer()
    qp, matrices_changed = self._qp.update(
        P=P, c=c, A=A, b=b, G=G, h=h, x_lb=x_lb, x_ub=x_ub
    )
    if self._result.info.status == Status.SOLVED:
      self._warm_start = self._result.copy()
    else:
      self._warm_start = None
    self._qp = qp
    if not reuse_preconditioner:
      self._scaling.compute(
          qp,
          self._settings.preconditioner_iter,
          self._settings.preconditioner_scale_cost,
      )
    self._scaled = self._scaling.scale_data(qp)
    if matrices_changed or not reuse_preconditioner:
      # Patterns are fixed at setup, only the values change.
      self._kkt.update_data(self._scaled)
    self._setup_time = 0.0
    self._update_time = timeit.default_timer() - start

  def solve(self) -> Status:
    """Solves the problem, the solution is available in `result`.

    Returns:
      The status of the solve.

    Raises:
      RuntimeError: If called before `setup`.
    """
    self._check_setup()
    settings = self._settings
    start = timeit.default_timer()

    errors = settings.errors()
    if errors:
      for error in errors:
        logging.error("Invalid settings: %s", error)
      info = Info(status=Status.INVALID_SETTINGS)
      it = None
    else:
      self._kkt.settings = settings
      it, info = self._iterate(settings, start)

    if it is None:
      self._result = Result.empty(self._qp.n, self._qp.p, self._qp.m)
      self._result.info = info
    else:
      self._result = self._unscale(it, info)
    if settings.compute_timings:
      info.setup_time = self._setup_time
      info.update_time = self._update_time
      info.solve_time = timeit.default_timer() - start
      info.run_time = info.setup_time + info.update_time + info.solve_time
    return info.status

  def free(self) -> None:
    """Releases the problem data and factorization."""
    if self._kkt is not None:
      self._kkt.free()
    self._qp = self._scaled = self._scaling = self._kkt = None
    self._result = self._warm_start = None

  def _iterate(
      self, settings: Settings, start: float
  ) -> tuple[Optional[ipm.Iterate], Info]:
    """Runs the interior point iterations on the scaled problem."""
    engine = ipm.StepEngine(self._scaled, self._kkt, settings)
    monitor = termination.ConvergenceMonitor(
        self._scaled, self._scaling, settings
    )
    reg = regularization.RegularizationController(settings)
    info = Info()
    self._log_header(settings)

    try:
      if self._warm_start is not None:
        it = engine.warm_point(self._scale_result(self._warm_start))
      else:
        it = self._with_retries(
            reg, lambda: engine.initial_point(reg.rho, reg.delta)
        )
    except FactorizationError:
      info.status = Status.NUMERICAL_ERROR
      self._fill_regularization_info(info, reg)
      self._log_footer(settings, info)
      return None, info

    status = Status.UNSOLVED
    mu_prev = 0.0
    k = 0
    while True:
      res = engine.residuals(it)
      mu = engine.mu(it)
      monitor.update_info(info, it, res)
      info.iter = k
      info.mu = mu
      self._fill_regularization_info(info, reg)

      # --- Termination check ---
      if monitor.is_solved(info):
        status = Status.SOLVED
      elif (
          k > 0
          and reg.dual_stall > 0
          and monitor.is_primal_infeasible(it, info)
      ):
        status = Status.PRIMAL_INFEASIBLE
      elif (
          k > 0
          and reg.primal_stall > 0
          and monitor.is_dual_infeasible(it, info)
      ):
        status = Status.DUAL_INFEASIBLE
      elif settings.custom_term_cb is not None and settings.custom_term_cb(
          self._unscale(it, dataclasses.replace(info))
      ):
        logging.debug("Custom termination callback stopped the solve.")
        status = Status.SOLVED
      elif k >= settings.max_iter:
        status = Status.MAX_ITER_REACHED
      self._log_iteration(settings, info, start)
      if status != Status.UNSOLVED:
        break

      # --- Proximal centers and regularization ---
      if k > 0:
        update_primal, update_dual = reg.update(
            info.primal_inf, info.dual_inf, mu, mu_prev, engine.cone_dim > 0
        )
        if update_primal:
          it.zeta = it.x.copy()
        if update_dual:
          it.lambda_ = it.y.copy()
          it.nu = it.z.copy()
          it.nu_lb = it.z_lb.copy()
          it.nu_ub = it.z_ub.copy()

      # --- Predictor-corrector step ---
      current = it
      try:
        it, stats = self._with_retries(
            reg, lambda: engine.step(current, reg.rho, reg.delta, mu)
        )
      except FactorizationError:
        status = Status.NUMERICAL_ERROR
        break
      info.sigma = stats["sigma"]
      info.primal_step = stats["primal_step"]
      info.dual_step = stats["dual_step"]
      mu_prev = mu
      k += 1

    info.status = status
    self._fill_regularization_info(info, reg)
    self._log_footer(settings, info)
    return it, info

  @staticmethod
  def _with_retries(reg: regularization.RegularizationController, fn):
    """Calls `fn`, increasing the regularization after failed factorizations.

    Raises:
      FactorizationError: If the retry budget is exhausted.
    """
    while True:
      try:
        return fn()
      except FactorizationError as e:
        logging.debug("Factorization failed: %s", e)
        if not reg.escalate():
          logging.warning(
              "Exceeded %d factorization retries.", reg.factor_retires
          )
          raise

  @staticmethod
  def _fill_regularization_info(
      info: Info, reg: regularization.RegularizationController
  ):
    info.rho = reg.rho
    info.delta = reg.delta
    info.reg_limit = reg.reg_limit
    info.factor_retires = reg.factor_retires
    info.no_primal_update = reg.no_primal_update
    info.no_dual_update = reg.no_dual_update

  def _unscale(self, it: ipm.Iterate, info: Info) -> Result:
    """Maps a scaled iterate back to the original problem."""
    sc, n = self._scaling, self._qp.n
    lb, ub = self._qp.x_lb_idx, self._qp.x_ub_idx
    return Result(
        x=sc.unscale_primal(it.x),
        y=sc.unscale_dual_eq(it.y),
        z=sc.unscale_dual_ineq(it.z),
        z_lb=_expand(sc.unscale_dual_box(it.z_lb, lb), lb, n, 0.0),
        z_ub=_expand(sc.unscale_dual_box(it.z_ub, ub), ub, n, 0.0),
        s=sc.unscale_slack_ineq(it.s),
        s_lb=_expand(sc.unscale_slack_box(it.s_lb, lb), lb, n, np.inf),
        s_ub=_expand(sc.unscale_slack_box(it.s_ub, ub), ub, n, np.inf),
        zeta=sc.unscale_primal(it.zeta),
        lambda_=sc.unscale_dual_eq(it.lambda_),
        nu=sc.unscale_dual_ineq(it.nu),
        nu_lb=_expand(sc.unscale_dual_box(it.nu_lb, lb), lb, n, 0.0),
        nu_ub=_expand(sc.unscale_dual_box(it.nu_ub, ub), ub, n, 0.0),
        info=info,
    )

  def _scale_result(self, result: Result) -> ipm.Iterate:
    """Maps a result of the original problem into the scaled space."""
    sc = self._scaling
    lb, ub = self._qp.x_lb_idx, self._qp.x_ub_idx
    return ipm.Iterate(
        x=sc.scale_primal(result.x),
        y=sc.scale_dual_eq(result.y),
        z=sc.scale_dual_ineq(result.z),
        z_lb=sc.scale_dual_box(result.z_lb[lb], lb),
        z_ub=sc.scale_dual_box(result.z_ub[ub], ub),
        s=sc.scale_slack_ineq(result.s),
        s_lb=sc.scale_slack_box(result.s_lb[lb], lb),
        s_ub=sc.scale_slack_box(result.s_ub[ub], ub),
        zeta=sc.scale_primal(result.zeta),
        lambda_=sc.scale_dual_eq(result.lambda_),
        nu=sc.scale_dual_ineq(result.nu),
        nu_lb=sc.scale_dual_box(result.nu_lb[lb], lb),
        nu_ub=sc.scale_dual_box(result.nu_ub[ub], ub),
    )

  def _describe(self) -> str:
    return ""

  def _log_header(self, settings: Settings):
    if not settings.verbose:
      return
    qp = self._qp
    print(
        f"| PIPQP v{__version__}:"
        f" n={qp.n}, p={qp.p}, m={qp.m}, n_lb={qp.n_lb}, n_ub={qp.n_ub},"
        f" {self._describe()}"
    )
    print(f"{_SEPARA}\n{_HEADER}\n{_SEPARA}")

  def _log_iteration(self, settings: Settings, info: Info, start: float):
    """Logs the iteration stats."""
    if not settings.verbose:
      return
    print(
        f"| {info.iter:>4} | {info.primal_obj:>10.3e} |"
        f" {info.dual_obj:>10.3e} | {info.primal_inf:>8.2e} |"
        f" {info.dual_inf:>8.2e} | {info.duality_gap:>8.2e} |"
        f" {info.mu:>8.2e} | {info.rho:>8.2e} | {info.delta:>8.2e} |"
        f" {info.primal_step:>6.4f} | {info.dual_step:>6.4f} |"
        f" {timeit.default_timer() - start:>8.2e} |"
    )

  def _log_footer(self, settings: Settings, info: Info):
    if not settings.verbose:
      return
    if info.status == Status.MAX_ITER_REACHED:
      message = f"Failed to converge in {settings.max_iter} iterations"
    else:
      message = _FOOTERS.get(info.status, info.status.value)
    print(f"{_SEPARA}\n| {message}")


class DenseSolver(_Solver):
  """Solver for QPs with dense matrices (numpy arrays).

  The KKT system is reduced to its Schur complement and factorized with a
  dense Cholesky decomposition.
  """

  _la = linalg.DENSE

  def _make_kkt(self, qp):
    return kkt_lib.DenseKktSystem(qp, self._settings)

  def _describe(self):
    return "dense"


class SparseSolver(_Solver):
  """Solver for QPs with sparse matrices (scipy.sparse).

  The quasi-definite KKT matrix is assembled once per sparsity pattern and
  refactorized every iteration by the chosen linear solver.
  """

  _la = linalg.SPARSE

  def __init__(self, linear_solver: LinearSolver = LinearSolver.SCIPY):
    if not isinstance(linear_solver, LinearSolver):
      raise TypeError(
          f"linear_solver must be a LinearSolver, got {linear_solver!r}."
      )
    super().__init__()
    self.linear_solver = linear_solver

  def _make_kkt(self, qp):
    return kkt_lib.SparseKktSystem(
        qp, self._settings, self.linear_solver.value()
    )

  def _describe(self):
    qp = self._qp
    return (
        f"nnz(P)={qp.P.nnz}, nnz(A)={qp.A.nnz}, nnz(G)={qp.G.nnz},"
        f" linear_solver={self.linear_solver.name}"
    )


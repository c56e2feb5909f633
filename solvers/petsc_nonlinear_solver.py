"""
PETSc SNES adapter for FE nonlinear implicit systems.

Goal:
- Own one PETSc.SNES between init() and clear(); solve() recreates it per call.
- Route SNES residual / Jacobian / post-check callbacks through
  SNESCallbackDispatcher, which keeps the FE system's ghosted solution in
  sync with the SNES iterate and enforces constraints.
- Attach null spaces, a shell preconditioner and solver-configuration hooks
  when they are configured.

Failure policy:
- Exceptions raised in user callbacks are re-raised from solve().
- PETSc errors become SolverBackendError on a single rank; with more than one
  rank the whole job is aborted because the collective state is unrecoverable.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from parallel.mpi_bootstrap import bootstrap_mpi_before_petsc

bootstrap_mpi_before_petsc()

from petsc4py import PETSc

from core.logging_utils import write_root
from core.types import NonlinearSolverConfig, format_options_prefix
from parallel.petsc_views import as_matrix_view, as_vector_view, bind_solution
from solvers.nonlinear_callbacks import CallbackRole, CallbackSlot, NonlinearCallbacks
from solvers.nonlinear_types import (
    CONVERGED_ITERATING,
    SolveResult,
    SolveState,
    SolverBackendError,
    converged_reason_name,
    is_converged_reason,
)
from solvers.null_space import build_mat_null_space
from solvers.preconditioner import Preconditioner, ShellPreconditionerContext, attach_shell_preconditioner
from solvers.snes_callbacks import SNESCallbackDispatcher, attach_postcheck
from solvers.solver_configuration import SolverConfiguration, set_petsc_options

logger = logging.getLogger(__name__)


def _comm_size(comm) -> int:
    try:
        return int(comm.getSize())
    except AttributeError:
        return int(comm.Get_size())


def _abort_job(comm, message: str) -> None:
    logger.critical("%s; aborting all ranks.", message)
    try:
        comm.tompi4py().Abort(1)
    except AttributeError:
        from mpi4py import MPI

        MPI.COMM_WORLD.Abort(1)


def _set_function_compat(snes, func: Callable, F: PETSc.Vec) -> None:
    try:
        snes.setFunction(func, F)
    except TypeError:
        # Some petsc4py versions use reversed argument order
        snes.setFunction(F, func)


def _set_jacobian_compat(snes, func: Callable, J: PETSc.Mat, P: PETSc.Mat) -> None:
    try:
        snes.setJacobian(func, J, P)
    except TypeError:
        snes.setJacobian(J=J, P=P, func=func)


class PetscNonlinearSolver:
    """
    Nonlinear solver adapter bound to one FE system.

    Callbacks are attached with the attach_* helpers (or directly on
    `callbacks`); each role takes a function or an object, never both.
    """

    def __init__(self, system, config: Optional[NonlinearSolverConfig] = None) -> None:
        self.system = system
        self.config = config if config is not None else NonlinearSolverConfig()
        self.callbacks = NonlinearCallbacks()
        self.preconditioner: Optional[Preconditioner] = None
        self.solver_configuration: Optional[SolverConfiguration] = None

        self.snes: Optional[PETSc.SNES] = None
        self.converged = False
        self._reason = CONVERGED_ITERATING
        self._n_linear_iterations = 0
        self._state: Optional[SolveState] = None
        self._dispatcher: Optional[SNESCallbackDispatcher] = None
        self._pc_context: Optional[ShellPreconditionerContext] = None
        self._postcheck_attached = False

    # ------------------------------------------------------------------
    # Attach helpers
    # ------------------------------------------------------------------
    def _attach(self, role: CallbackRole, function, obj) -> None:
        slot = self.callbacks.slot(role)
        slot.function = function
        slot.obj = obj

    def attach_residual(self, function=None, obj=None) -> None:
        self._attach(CallbackRole.RESIDUAL, function, obj)

    def attach_jacobian(self, function=None, obj=None) -> None:
        self._attach(CallbackRole.JACOBIAN, function, obj)

    def attach_residual_and_jacobian(self, function=None, obj=None) -> None:
        self._attach(CallbackRole.RESIDUAL_AND_JACOBIAN, function, obj)

    def attach_postcheck(self, function=None, obj=None) -> None:
        self._attach(CallbackRole.POSTCHECK, function, obj)

    def attach_nullspace(self, function=None, obj=None) -> None:
        self._attach(CallbackRole.NULLSPACE, function, obj)

    def attach_transpose_nullspace(self, function=None, obj=None) -> None:
        self._attach(CallbackRole.TRANSPOSE_NULLSPACE, function, obj)

    def attach_nearnullspace(self, function=None, obj=None) -> None:
        self._attach(CallbackRole.NEARNULLSPACE, function, obj)

    def attach_presolve(self, function=None, obj=None) -> None:
        self._attach(CallbackRole.PRESOLVE, function, obj)

    def attach_preconditioner(self, preconditioner: Optional[Preconditioner]) -> None:
        self.preconditioner = preconditioner

    def attach_solver_configuration(self, configuration: Optional[SolverConfiguration]) -> None:
        self.solver_configuration = configuration

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------
    @property
    def initialized(self) -> bool:
        return self.snes is not None

    def init(self, name: Optional[str] = None) -> None:
        """Create and wire the SNES; no-op when already initialized."""
        if self.initialized:
            return

        cfg = self.config
        snes = PETSc.SNES().create(comm=self.system.comm)
        self.snes = snes

        prefix = format_options_prefix(name) if name else cfg.options_prefix
        if prefix:
            snes.setOptionsPrefix(prefix)
        if cfg.snes_type:
            snes.setType(cfg.snes_type)

        self._state = SolveState()
        self._dispatcher = SNESCallbackDispatcher(self.system, self.callbacks, cfg, self._state)

        if cfg.default_monitor:
            snes.setMonitor(self._dispatcher.monitor)

        options = dict(cfg.petsc_options)
        if cfg.linesearch_type:
            options.setdefault("snes_linesearch_type", cfg.linesearch_type)
        if options:
            set_petsc_options(prefix, options)
            logger.debug("PETSc options (prefix=%r): %s", prefix, options)

        if self.solver_configuration is not None:
            bind = getattr(self.solver_configuration, "bind", None)
            if callable(bind):
                bind(snes)
            self.solver_configuration.set_options_during_init()

        if self.preconditioner is not None:
            self._pc_context = attach_shell_preconditioner(snes, self.preconditioner)

        # Registering a post-check costs extra residual evaluations, so only
        # do it when the user supplied one.
        self._postcheck_attached = False
        if self.callbacks.has_postcheck():
            self._postcheck_attached = attach_postcheck(snes, self._dispatcher)
            if not self._postcheck_attached:
                logger.warning("petsc4py SNESLineSearch has no setPostCheck; the post-check will not run.")

        logger.debug("SNES initialized (prefix=%r, type=%s).", prefix, cfg.snes_type or "default")

    def clear(self) -> None:
        """Destroy the SNES and reset per-solve state; no-op when not initialized."""
        if not self.initialized:
            return
        snes, self.snes = self.snes, None
        snes.destroy()
        self._state = None
        self._dispatcher = None
        self._pc_context = None
        self._postcheck_attached = False

    def close(self) -> None:
        self.clear()

    def __enter__(self) -> "PetscNonlinearSolver":
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        self.clear()

    def __del__(self) -> None:
        try:
            self.clear()
        except Exception:
            # Interpreter shutdown may have torn PETSc down already.
            pass

    # ------------------------------------------------------------------
    # Null spaces
    # ------------------------------------------------------------------
    def build_mat_null_space(self, slot: CallbackSlot, role: CallbackRole = CallbackRole.NULLSPACE):
        return build_mat_null_space(slot, self.system, role)

    def _attach_null_spaces(self, mat: PETSc.Mat) -> None:
        setters = (
            (CallbackRole.NULLSPACE, "setNullSpace"),
            (CallbackRole.TRANSPOSE_NULLSPACE, "setTransposeNullSpace"),
            (CallbackRole.NEARNULLSPACE, "setNearNullSpace"),
        )
        for role, setter_name in setters:
            if not self.callbacks.has_nullspace(role):
                continue
            slot = self.callbacks.slot(role)
            setter = getattr(mat, setter_name, None)
            if setter is None:
                logger.warning("Mat.%s is not available in this petsc4py; %s will be ignored.", setter_name, role.value)
                continue
            nsp = self.build_mat_null_space(slot, role)
            if nsp is None:
                continue
            try:
                setter(nsp)
            finally:
                nsp.destroy()

    # ------------------------------------------------------------------
    # Solve
    # ------------------------------------------------------------------
    def _fail(self, exc: BaseException, message: str) -> None:
        if _comm_size(self.system.comm) > 1:
            _abort_job(self.system.comm, f"{message}: {exc}")
        if isinstance(exc, PETSc.Error):
            raise SolverBackendError(f"{message}: {exc}") from exc
        raise exc

    def _run_presolve(self) -> None:
        hook = self.callbacks.presolve.resolve(CallbackRole.PRESOLVE)
        if hook is not None:
            hook(self.system)

    def solve(self, jacobian, solution, residual, tol=None, max_its=None) -> SolveResult:
        """
        Solve the nonlinear system with `solution` as the initial guess.

        `jacobian` may be None when SNES builds the Jacobian itself (e.g.
        snes_mf or snes_fd in petsc_options). tol / max_its are accepted for
        interface compatibility; the configured tolerances are authoritative.
        Returns a SolveResult that unpacks as (n_iter, res_norm_2).
        """
        if tol is not None or max_its is not None:
            logger.debug("solve(): tol=%r max_its=%r ignored; configured tolerances apply.", tol, max_its)

        cfg = self.config
        t0 = time.perf_counter()
        try:
            self.init()
            snes = self.snes
            state = self._state
            dispatcher = self._dispatcher

            X = as_vector_view(solution)
            R = as_vector_view(residual)
            J = as_matrix_view(jacobian) if jacobian is not None else None

            _set_function_compat(snes, dispatcher.residual, R.vec)
            if self.callbacks.has_jacobian_source():
                if J is None:
                    logger.warning("A Jacobian source is configured but solve() got no matrix; it will not be used.")
                else:
                    _set_jacobian_compat(snes, dispatcher.jacobian, J.mat, J.mat)

            if J is not None:
                self._attach_null_spaces(J.mat)

            ksp = snes.getKSP()
            ksp.setTolerances(rtol=cfg.initial_linear_tolerance, max_it=cfg.max_linear_iterations)

            snes.setTolerances(
                rtol=cfg.relative_residual_tolerance,
                atol=cfg.absolute_residual_tolerance,
                stol=cfg.relative_step_tolerance,
                max_it=cfg.max_nonlinear_iterations,
            )
            if hasattr(snes, "setMaxFunctionEvaluations"):
                snes.setMaxFunctionEvaluations(cfg.max_function_evaluations)
            else:
                set_petsc_options(snes.getOptionsPrefix() or "", {"snes_max_funcs": str(cfg.max_function_evaluations)})

            snes.setFromOptions()

            self._run_presolve()

            if self.preconditioner is not None and J is not None:
                self.preconditioner.set_matrix(J.mat)
                self.preconditioner.init()

            if self.solver_configuration is not None:
                self.solver_configuration.configure_solver()

            # petsc4py surfaces a callback exception either as itself or as
            # PETSc.Error, depending on the build.
            try:
                snes.solve(None, X.vec)
            except Exception as exc:
                if state.error is not None:
                    self._fail(state.error, "SNES callback failed")
                self._fail(exc, "SNESSolve failed")
            if state.error is not None:
                self._fail(state.error, "SNES callback failed")

            n_iter = int(snes.getIterationNumber())
            self._n_linear_iterations = int(snes.getLinearSolveIterations())

            with bind_solution(self.system, X):
                self.system.get_dof_map().enforce_constraints_exactly(self.system)

            F = snes.getFunction()[0]
            res_norm_2 = float(F.norm(PETSc.NormType.NORM_2))

            self._reason = int(snes.getConvergedReason())
            self.converged = is_converged_reason(self._reason)

            result = SolveResult(
                n_iter=n_iter,
                res_norm_2=res_norm_2,
                converged=self.converged,
                reason=self._reason,
                reason_name=converged_reason_name(self._reason),
                n_linear_iterations=self._n_linear_iterations,
                n_residual_evals=state.n_residual_evals,
                n_jacobian_evals=state.n_jacobian_evals,
                n_postcheck_calls=state.n_postcheck_calls,
            )
        finally:
            self.clear()

        logger.info(
            "SNES %s: its=%d |F|=%.3e reason=%s lin_its=%d time=%.3fs",
            "converged" if result.converged else "diverged",
            result.n_iter,
            result.res_norm_2,
            result.reason_name,
            result.n_linear_iterations,
            time.perf_counter() - t0,
        )
        return result

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------
    def get_converged_reason(self) -> int:
        if self.initialized:
            self._reason = int(self.snes.getConvergedReason())
        return self._reason

    def print_converged_reason(self) -> None:
        write_root(
            self.system.comm,
            "Nonlinear solver convergence/divergence reason: "
            + converged_reason_name(self.get_converged_reason()),
        )

    def get_total_linear_iterations(self) -> int:
        return self._n_linear_iterations

    def get_current_nonlinear_iteration_number(self) -> int:
        """Iteration index of the running solve; 0 outside of solve()."""
        if self._state is None:
            return 0
        return self._state.current_iteration

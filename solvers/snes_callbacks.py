"""
SNES callback dispatcher.

Bridges PETSc SNES callbacks to the FE system and the user's residual /
Jacobian / post-check logic:

- every callback re-synchronizes the ghosted local solution from the
  iterate SNES hands in, enforces constraints on that local buffer and only
  then calls user code;
- written results are closed before control returns to SNES;
- exceptions are recorded on the SolveState (petsc4py turns them into PETSc
  error codes) and re-raised.
"""

from __future__ import annotations

import logging
import time
from typing import Tuple

from core.logging_utils import write_root
from core.types import NonlinearSolverConfig
from parallel.petsc_views import PetscMatrixView, PetscVectorView, bind_solution
from solvers.nonlinear_callbacks import CallbackRole, NonlinearCallbacks
from solvers.nonlinear_types import MissingCallbackError, SolveState

logger = logging.getLogger(__name__)


def _as_result_pair(flags) -> Tuple[bool, bool]:
    if flags is None:
        return False, False
    changed_y, changed_w = flags
    return bool(changed_y), bool(changed_w)


class SNESCallbackDispatcher:
    """
    Callback bodies for one solve() call.

    The adapter binds the bound methods of an instance as SNES callbacks, so
    no opaque context pointer has to be cast back.
    """

    def __init__(
        self,
        system,
        callbacks: NonlinearCallbacks,
        config: NonlinearSolverConfig,
        state: SolveState,
    ) -> None:
        self.system = system
        self.callbacks = callbacks
        self.config = config
        self.state = state

    # ------------------------------------------------------------------
    # Shared reconciliation
    # ------------------------------------------------------------------
    def _localize(self, x) -> PetscVectorView:
        """
        Project the SNES iterate into the system's ghosted buffer.

        x is swapped in as the system solution only for the update(), which
        leaves the distributed iterate untouched. Constraints are then
        enforced on the local buffer, not on x (SNES may have it locked).
        """
        X_global = PetscVectorView(x)
        with bind_solution(self.system, X_global):
            self.system.update()
        local = self.system.current_local_solution
        self.system.get_dof_map().enforce_constraints_exactly(self.system, local)
        return local

    def _record_iteration(self, snes) -> None:
        self.state.current_iteration = int(snes.getIterationNumber())

    # ------------------------------------------------------------------
    # Residual
    # ------------------------------------------------------------------
    def residual(self, snes, x, r) -> None:
        try:
            self._residual(snes, x, r)
        except Exception as exc:
            self.state.record_error(exc)
            raise

    def _residual(self, snes, x, r) -> None:
        t0 = time.perf_counter()
        self._record_iteration(snes)
        R = PetscVectorView(r)
        X_local = self._localize(x)

        if self.config.zero_out_residual:
            R.zero()

        source = self.callbacks.resolve_residual()
        if source is None:
            raise MissingCallbackError("Unable to compute residual and/or Jacobian: no residual source configured")

        if source.role == CallbackRole.RESIDUAL_AND_JACOBIAN:
            source(X_local, R, None, self.system)
        else:
            source(X_local, R, self.system)

        R.close()
        self.state.n_residual_evals += 1
        logger.debug(
            "residual: its=%d eval=%d time=%.3e",
            self.state.current_iteration,
            self.state.n_residual_evals,
            time.perf_counter() - t0,
        )

    # ------------------------------------------------------------------
    # Jacobian
    # ------------------------------------------------------------------
    def jacobian(self, snes, x, jac, pc) -> None:
        try:
            self._jacobian(snes, x, jac, pc)
        except Exception as exc:
            self.state.record_error(exc)
            raise

    def _jacobian(self, snes, x, jac, pc) -> None:
        t0 = time.perf_counter()
        self._record_iteration(snes)
        PC = PetscMatrixView(pc)
        Jac = PetscMatrixView(jac)
        X_local = self._localize(x)

        if self.config.zero_out_jacobian:
            PC.zero()

        source = self.callbacks.resolve_jacobian()
        if source is None:
            raise MissingCallbackError("Unable to compute residual and/or Jacobian: no Jacobian source configured")

        if source.role == CallbackRole.RESIDUAL_AND_JACOBIAN:
            source(X_local, None, PC, self.system)
        else:
            source(X_local, PC, self.system)

        PC.close()
        Jac.close()
        self.state.n_jacobian_evals += 1
        logger.debug(
            "jacobian: its=%d eval=%d time=%.3e",
            self.state.current_iteration,
            self.state.n_jacobian_evals,
            time.perf_counter() - t0,
        )

    # ------------------------------------------------------------------
    # Line-search post-check
    # ------------------------------------------------------------------
    def postcheck(self, x, y, w) -> Tuple[bool, bool]:
        """
        Return (changed_search_direction, changed_new_soln).

        x is the old solution, y the search direction and w the candidate
        solution proposed by the line search.
        """
        try:
            return self._postcheck(x, y, w)
        except Exception as exc:
            self.state.record_error(exc)
            raise

    def _postcheck(self, x, y, w) -> Tuple[bool, bool]:
        changed_y = False
        changed_w = False

        source = self.callbacks.postcheck.resolve(CallbackRole.POSTCHECK)

        dof_map = self.system.get_dof_map()
        # Every rank holds the full constraint list, so this agrees across ranks
        # and the collective enforcement below is entered everywhere or nowhere.
        has_constraints = int(dof_map.n_constraints()) > 0
        if not has_constraints and source is None:
            return changed_y, changed_w

        self.state.n_postcheck_calls += 1
        W = PetscVectorView(w)

        if source is not None:
            X = PetscVectorView(x)
            Y = PetscVectorView(y)
            user_y, user_w = _as_result_pair(source(X, Y, W, self.system))
            changed_y = changed_y or user_y
            changed_w = changed_w or user_w

        if has_constraints:
            # Enforce on the distributed candidate; y is left as the user set it.
            with bind_solution(self.system, W):
                dof_map.enforce_constraints_exactly(self.system)
            changed_w = True

        return changed_y, changed_w

    # ------------------------------------------------------------------
    # Monitor
    # ------------------------------------------------------------------
    def monitor(self, snes, its, fnorm) -> None:
        write_root(self.system.comm, "  NL step %2d, |residual|_2 = %e" % (int(its), float(fnorm)))


def attach_postcheck(snes, dispatcher: SNESCallbackDispatcher) -> bool:
    """
    Register dispatcher.postcheck with the SNES line search.

    Returns False when the linked petsc4py has no post-check hook.
    """
    try:
        linesearch = snes.getLineSearch()
    except AttributeError:
        linesearch = None
    if linesearch is None or not hasattr(linesearch, "setPostCheck"):
        return False

    def _set_flag(flag_obj, value: bool) -> None:
        try:
            flag_obj[0] = bool(value)
        except (TypeError, IndexError):
            flag_obj[...] = bool(value)

    def _postcheck(ls_obj, X_vec, Y_vec, W_vec, *flags):
        changed_y, changed_w = dispatcher.postcheck(X_vec, Y_vec, W_vec)
        # Older bindings pass mutable flag buffers instead of using the return value.
        if len(flags) >= 2:
            _set_flag(flags[0], changed_y)
            _set_flag(flags[1], changed_w)
        return changed_y, changed_w

    linesearch.setPostCheck(_postcheck)
    return True

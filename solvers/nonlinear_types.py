"""
Shared nonlinear solver result types, solve-scoped state and errors.

Goal:
- Callbacks and the adapter share one SolveState per solve() call instead of
  long-lived counters on the adapter.
- Results are returned as a value, not harvested from adapter fields.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Dict, Iterator, Optional


class NonlinearSolverError(RuntimeError):
    """Base class for fatal nonlinear solver errors."""


class SolverConfigurationError(NonlinearSolverError):
    """Both a function and an object were supplied for the same callback role."""


class MissingCallbackError(NonlinearSolverError):
    """No source is configured for a callback role SNES needs."""


class SolverBackendError(NonlinearSolverError):
    """A PETSc call failed."""


# Terminal SNES reasons are never 0; 0 means "still iterating".
CONVERGED_ITERATING = 0

_REASON_NAMES: Dict[int, str] = {}


def is_converged_reason(reason: int) -> bool:
    """All diverged SNES reasons are negative."""
    return int(reason) >= 0


def _load_reason_names() -> Dict[int, str]:
    if _REASON_NAMES:
        return _REASON_NAMES
    from parallel.mpi_bootstrap import get_petsc

    PETSc = get_petsc()
    table = PETSc.SNES.ConvergedReason
    for name in dir(table):
        if name.startswith("_"):
            continue
        value = getattr(table, name)
        if isinstance(value, int) and not isinstance(value, bool):
            # Prefer the SNES_* spelling over petsc4py's short aliases.
            if name.startswith(("CONVERGED_", "DIVERGED_")) or value not in _REASON_NAMES:
                _REASON_NAMES[value] = name
    return _REASON_NAMES


def converged_reason_name(reason: int) -> str:
    """Human-readable name of an SNES converged reason code."""
    reason = int(reason)
    try:
        names = _load_reason_names()
    except RuntimeError:
        names = {}
    return names.get(reason, f"UNKNOWN_REASON({reason})")


@dataclass(slots=True)
class SolveState:
    """
    Per-solve bookkeeping shared by the SNES callbacks.

    current_iteration is only meaningful while the solve is running; error
    holds the first exception raised inside a callback so solve() can
    re-raise it after SNES hands control back.
    """

    current_iteration: int = 0
    n_residual_evals: int = 0
    n_jacobian_evals: int = 0
    n_postcheck_calls: int = 0
    error: Optional[BaseException] = None

    def record_error(self, exc: BaseException) -> None:
        if self.error is None:
            self.error = exc


@dataclass(slots=True)
class SolveResult:
    n_iter: int
    res_norm_2: float
    converged: bool
    reason: int
    reason_name: str
    n_linear_iterations: int = 0
    n_residual_evals: int = 0
    n_jacobian_evals: int = 0
    n_postcheck_calls: int = 0

    def __iter__(self) -> Iterator:
        # Unpacks as (n_iter, res_norm_2).
        yield self.n_iter
        yield self.res_norm_2

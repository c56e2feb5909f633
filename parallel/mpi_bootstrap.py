from __future__ import annotations

import os
import sys
from typing import Optional, Sequence

_BOOTSTRAPPED = False
_PETSC_BOOTSTRAPPED = False


def bootstrap_mpi() -> None:
    """
    Ensure mpi4py initializes before petsc4py.
    """
    global _BOOTSTRAPPED
    if _BOOTSTRAPPED:
        return
    _BOOTSTRAPPED = True

    try:
        from mpi4py import MPI  # noqa: F401
    except ImportError:
        return


def bootstrap_mpi_before_petsc(argv: Optional[Sequence[str]] = None) -> None:
    """
    Ensure mpi4py initializes before petsc4py, and pass argv to PETSc.

    Under pytest the interpreter argv belongs to pytest, so PETSc gets an
    empty command line unless argv is given explicitly.
    """
    bootstrap_mpi()

    global _PETSC_BOOTSTRAPPED
    if _PETSC_BOOTSTRAPPED:
        return
    _PETSC_BOOTSTRAPPED = True

    try:
        import petsc4py
    except ImportError:
        return

    if argv is None:
        argv = [] if os.environ.get("PYTEST_CURRENT_TEST") else sys.argv
    try:
        petsc4py.init(list(argv))
    except Exception:
        # PETSc may already be initialized by an earlier import.
        pass


def get_petsc():
    """
    Import petsc4py.PETSc with MPI bootstrap.
    """
    try:
        bootstrap_mpi_before_petsc()
        from petsc4py import PETSc
    except ImportError as exc:  # pragma: no cover
        raise RuntimeError("petsc4py is required for the SNES nonlinear solver.") from exc
    return PETSc

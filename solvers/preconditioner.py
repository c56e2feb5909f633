"""
Preconditioner attach point for the SNES inner linear solve.

The adapter only wires a Preconditioner into KSP as a Python (shell) PC;
what the preconditioner does is up to the implementation.
"""

from __future__ import annotations

import logging
from typing import Optional, Protocol, runtime_checkable

from parallel.mpi_bootstrap import bootstrap_mpi_before_petsc

bootstrap_mpi_before_petsc()

from petsc4py import PETSc

from parallel.petsc_views import PetscMatrixView, PetscVectorView, as_matrix_view

logger = logging.getLogger(__name__)


@runtime_checkable
class Preconditioner(Protocol):
    def init(self) -> None: ...

    def set_matrix(self, mat) -> None: ...

    def setup(self) -> None: ...

    def apply(self, x: PetscVectorView, y: PetscVectorView) -> None: ...


class ShellPreconditionerContext:
    """petsc4py Python-PC context forwarding setUp/apply to a Preconditioner."""

    def __init__(self, preconditioner: Preconditioner) -> None:
        self.preconditioner = preconditioner
        self.n_setup = 0
        self.n_apply = 0

    def setUp(self, pc) -> None:
        self.n_setup += 1
        self.preconditioner.setup()

    def apply(self, pc, x, y) -> None:
        self.n_apply += 1
        self.preconditioner.apply(PetscVectorView(x), PetscVectorView(y))


def attach_shell_preconditioner(snes, preconditioner: Preconditioner) -> ShellPreconditionerContext:
    """Initialize `preconditioner` and install it as the KSP PC of `snes`."""
    preconditioner.init()
    pc = snes.getKSP().getPC()
    ctx = ShellPreconditionerContext(preconditioner)
    pc.setType(PETSc.PC.Type.PYTHON)
    pc.setPythonContext(ctx)
    return ctx


class JacobiPreconditioner:
    """
    Diagonal scaling y = D^{-1} x with D = diag(A).

    Zero diagonal entries are treated as 1 so constrained or empty rows pass
    through unchanged.
    """

    def __init__(self) -> None:
        self._matrix: Optional[PetscMatrixView] = None
        self._inv_diag: Optional[PETSc.Vec] = None
        self.initialized = False

    def init(self) -> None:
        self.initialized = True

    def set_matrix(self, mat) -> None:
        self._matrix = as_matrix_view(mat)

    def setup(self) -> None:
        if self._matrix is None:
            raise RuntimeError("JacobiPreconditioner.setup() called before set_matrix()")
        if self._inv_diag is not None:
            self._inv_diag.destroy()
        diag = self._matrix.mat.getDiagonal()
        with diag as d:
            d[d == 0.0] = 1.0
        diag.reciprocal()
        self._inv_diag = diag

    def apply(self, x: PetscVectorView, y: PetscVectorView) -> None:
        if self._inv_diag is None:
            self.setup()
        y.vec.pointwiseMult(self._inv_diag, x.vec)

    def destroy(self) -> None:
        if self._inv_diag is not None:
            self._inv_diag.destroy()
            self._inv_diag = None

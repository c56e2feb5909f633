"""
Reference nonlinear implicit system.

Implements the FE-system surface the SNES adapter relies on:
  - solution: distributed PetscVectorView
  - current_local_solution: all-gathered sequential copy (the "ghosted"
    buffer; every rank sees every DOF)
  - update(): distributed -> local projection (collective)
  - get_dof_map(): AffineConstraintDofMap
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from parallel.mpi_bootstrap import bootstrap_mpi_before_petsc

bootstrap_mpi_before_petsc()

from petsc4py import PETSc

from fem.dof_map import AffineConstraintDofMap
from parallel.petsc_views import PetscVectorView

logger = logging.getLogger(__name__)


class ImplicitSystem:
    def __init__(
        self,
        n_dofs: int,
        *,
        comm: Optional[PETSc.Comm] = None,
        dof_map: Optional[AffineConstraintDofMap] = None,
        name: str = "nonlinear",
    ) -> None:
        n_dofs = int(n_dofs)
        if n_dofs <= 0:
            raise ValueError(f"ImplicitSystem requires n_dofs > 0, got {n_dofs}")
        self.name = name
        self.comm = comm if comm is not None else PETSc.COMM_WORLD
        self.n_dofs = n_dofs

        self._template = PETSc.Vec().createMPI(n_dofs, comm=self.comm)
        self._template.set(0.0)
        self.solution = PetscVectorView(self._template.duplicate())
        self.solution.zero()

        self._scatter, local = PETSc.Scatter.toAll(self._template)
        self.current_local_solution = PetscVectorView(local)
        self._gather_buf = local.duplicate()

        self._dof_map = dof_map if dof_map is not None else AffineConstraintDofMap()
        lo, hi = self._template.getOwnershipRange()
        self._dof_map.set_local_range(lo, hi)

    def get_dof_map(self) -> AffineConstraintDofMap:
        return self._dof_map

    @property
    def local_range(self):
        lo, hi = self._template.getOwnershipRange()
        return int(lo), int(hi)

    def _scatter_into(self, src: PETSc.Vec, dst: PETSc.Vec) -> None:
        self._scatter.scatter(src, dst, addv=PETSc.InsertMode.INSERT_VALUES, mode=PETSc.ScatterMode.FORWARD)

    def update(self) -> None:
        """Refresh current_local_solution from solution (collective)."""
        self._scatter_into(self.solution.vec, self.current_local_solution.vec)

    def gather(self, view: PetscVectorView) -> np.ndarray:
        """All-gather a distributed vector into a numpy copy (collective)."""
        self._scatter_into(view.vec, self._gather_buf)
        return np.array(self._gather_buf.getArray(readonly=True), copy=True)

    def create_vector(self) -> PETSc.Vec:
        """New zeroed distributed vector with the solution layout; caller destroys it."""
        v = self._template.duplicate()
        v.set(0.0)
        return v

    def create_matrix(self, nnz_per_row: int = 3) -> PETSc.Mat:
        """Preallocated AIJ matrix matching the solution layout; caller destroys it."""
        lo, hi = self.local_range
        nloc = hi - lo
        mat = PETSc.Mat().createAIJ(
            size=((nloc, self.n_dofs), (nloc, self.n_dofs)),
            nnz=int(nnz_per_row),
            comm=self.comm,
        )
        mat.setOption(PETSc.Mat.Option.NEW_NONZERO_ALLOCATION_ERR, False)
        mat.setUp()
        return mat

    def set_solution(self, values) -> None:
        """Write a full-length array into the owned part of solution."""
        values = np.asarray(values, dtype=PETSc.ScalarType)
        if values.shape != (self.n_dofs,):
            raise ValueError(f"values shape {values.shape} incompatible with n_dofs={self.n_dofs}")
        lo, hi = self.local_range
        with self.solution.array() as arr:
            arr[:] = values[lo:hi]
        self.update()

    def solution_array(self) -> np.ndarray:
        """All-gathered copy of the current solution."""
        return self.gather(self.solution)

    def destroy(self) -> None:
        for v in (self.solution.vec, self.current_local_solution.vec, self._gather_buf, self._template):
            v.destroy()
        self._scatter.destroy()

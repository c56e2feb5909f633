"""
Borrowed views over PETSc Vec / Mat handles.

A view never owns its handle: it lives for one callback invocation and lets
application code treat solver-owned storage as its own vector/matrix type.
Views of the same quantity can be swapped (handle exchange, no copy).
"""

from __future__ import annotations

import logging
from contextlib import contextmanager
from typing import Iterator, Sequence, Tuple

import numpy as np

from parallel.mpi_bootstrap import bootstrap_mpi_before_petsc

bootstrap_mpi_before_petsc()

from petsc4py import PETSc

logger = logging.getLogger(__name__)


def _as_indices(idx) -> np.ndarray:
    return np.asarray(idx, dtype=PETSc.IntType).ravel()


def _as_scalars(vals) -> np.ndarray:
    return np.asarray(vals, dtype=PETSc.ScalarType)


class PetscVectorView:
    """Non-owning wrapper around a PETSc.Vec."""

    __slots__ = ("_vec",)

    def __init__(self, vec: PETSc.Vec) -> None:
        if vec is None:
            raise ValueError("PetscVectorView requires a PETSc.Vec, got None")
        self._vec = vec

    @property
    def vec(self) -> PETSc.Vec:
        return self._vec

    @property
    def comm(self) -> PETSc.Comm:
        return self._vec.getComm()

    @property
    def size(self) -> int:
        return int(self._vec.getSize())

    @property
    def local_size(self) -> int:
        return int(self._vec.getLocalSize())

    @property
    def local_range(self) -> Tuple[int, int]:
        lo, hi = self._vec.getOwnershipRange()
        return int(lo), int(hi)

    def __len__(self) -> int:
        return self.size

    def zero(self) -> None:
        self._vec.zeroEntries()

    def close(self) -> None:
        """Finalize buffered (possibly off-process) writes."""
        self._vec.assemblyBegin()
        self._vec.assemblyEnd()

    def set_values(self, idx, vals) -> None:
        self._vec.setValues(_as_indices(idx), _as_scalars(vals), addv=PETSc.InsertMode.INSERT_VALUES)

    def add_values(self, idx, vals) -> None:
        self._vec.setValues(_as_indices(idx), _as_scalars(vals), addv=PETSc.InsertMode.ADD_VALUES)

    def get_values(self, idx) -> np.ndarray:
        """Values at global indices owned by this rank."""
        return np.asarray(self._vec.getValues(_as_indices(idx)))

    @contextmanager
    def array(self, readonly: bool = False) -> Iterator[np.ndarray]:
        """
        Yield the locally owned entries as a numpy array.

        The array is restored on every exit path; with readonly=False writes
        go straight into the vector.
        """
        if readonly:
            arr = self._vec.getArray(readonly=True)
            yield arr
            return
        with self._vec as arr:
            yield arr

    def norm(self) -> float:
        return float(self._vec.norm(PETSc.NormType.NORM_2))

    def dot(self, other: "PetscVectorView") -> float:
        return float(self._vec.dot(other.vec))

    def copy_to(self, other: "PetscVectorView") -> None:
        self._vec.copy(other.vec)

    def duplicate(self) -> PETSc.Vec:
        """Owning copy of the underlying vector; the caller destroys it."""
        out = self._vec.duplicate()
        self._vec.copy(out)
        return out

    def swap(self, other: "PetscVectorView") -> None:
        """Exchange the wrapped handles of two views."""
        self._vec, other._vec = other._vec, self._vec


class PetscMatrixView:
    """Non-owning wrapper around a PETSc.Mat."""

    __slots__ = ("_mat",)

    def __init__(self, mat: PETSc.Mat) -> None:
        if mat is None:
            raise ValueError("PetscMatrixView requires a PETSc.Mat, got None")
        self._mat = mat

    @property
    def mat(self) -> PETSc.Mat:
        return self._mat

    @property
    def shape(self) -> Tuple[int, int]:
        m, n = self._mat.getSize()
        return int(m), int(n)

    @property
    def row_range(self) -> Tuple[int, int]:
        lo, hi = self._mat.getOwnershipRange()
        return int(lo), int(hi)

    def zero(self) -> None:
        self._mat.zeroEntries()

    def close(self) -> None:
        self._mat.assemblyBegin(PETSc.Mat.AssemblyType.FINAL)
        self._mat.assemblyEnd(PETSc.Mat.AssemblyType.FINAL)

    def set_value(self, row: int, col: int, value: float) -> None:
        self._mat.setValue(int(row), int(col), value, addv=PETSc.InsertMode.INSERT_VALUES)

    def add_value(self, row: int, col: int, value: float) -> None:
        self._mat.setValue(int(row), int(col), value, addv=PETSc.InsertMode.ADD_VALUES)

    def set_values(self, rows: Sequence[int], cols: Sequence[int], block) -> None:
        rows = _as_indices(rows)
        cols = _as_indices(cols)
        block = _as_scalars(block).reshape(rows.size, cols.size)
        self._mat.setValues(rows, cols, block, addv=PETSc.InsertMode.INSERT_VALUES)

    def add_values(self, rows: Sequence[int], cols: Sequence[int], block) -> None:
        rows = _as_indices(rows)
        cols = _as_indices(cols)
        block = _as_scalars(block).reshape(rows.size, cols.size)
        self._mat.setValues(rows, cols, block, addv=PETSc.InsertMode.ADD_VALUES)


def as_vector_view(obj) -> PetscVectorView:
    """Accept a view or a raw PETSc.Vec."""
    if isinstance(obj, PetscVectorView):
        return obj
    return PetscVectorView(obj)


def as_matrix_view(obj) -> PetscMatrixView:
    if isinstance(obj, PetscMatrixView):
        return obj
    return PetscMatrixView(obj)


@contextmanager
def bind_solution(system, view: PetscVectorView) -> Iterator[PetscVectorView]:
    """
    Temporarily make `view` the system's persistent solution storage.

    The previous handle is restored on every exit path, so the system never
    keeps pointing at solver storage past the callback that lent it.
    """
    system_solution = system.solution
    view.swap(system_solution)
    try:
        yield system_solution
    finally:
        view.swap(system_solution)

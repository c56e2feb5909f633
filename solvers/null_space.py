"""
Null-space construction for the SNES Jacobian.

Modes come from a user source (function or object), are copied into
solver-owned vectors, orthonormalized with classical Gram-Schmidt in input
order and packed into a PETSc.NullSpace.
"""

from __future__ import annotations

import logging
from typing import List, Optional, Sequence

from parallel.mpi_bootstrap import bootstrap_mpi_before_petsc

bootstrap_mpi_before_petsc()

from petsc4py import PETSc

from parallel.petsc_views import PetscVectorView
from solvers.nonlinear_callbacks import CallbackRole, CallbackSlot

logger = logging.getLogger(__name__)


def _raw_vec(mode) -> PETSc.Vec:
    if isinstance(mode, PetscVectorView):
        return mode.vec
    if isinstance(mode, PETSc.Vec):
        return mode
    raise TypeError(f"null-space mode must be a PETSc.Vec or PetscVectorView, got {type(mode).__name__}")


def orthonormalize_modes(modes: Sequence[PETSc.Vec]) -> None:
    """
    Classical Gram-Schmidt, in place and in input order.

    Mode 0 is normalized as-is; mode k is deflated against the already
    finalized modes [0, k) using dot products taken from the undeflated
    mode k, then normalized. Loses orthogonality for ill-conditioned mode
    sets; see DESIGN.md.
    """
    if not modes:
        return
    modes[0].normalize()
    for k in range(1, len(modes)):
        dots = modes[k].mDot(list(modes[:k]))
        modes[k].maxpy([-d for d in dots], list(modes[:k]))
        modes[k].normalize()


def build_mat_null_space(
    slot: CallbackSlot,
    system,
    role: CallbackRole = CallbackRole.NULLSPACE,
) -> Optional[PETSc.NullSpace]:
    """
    Build an orthonormal PETSc.NullSpace from the modes produced by `slot`.

    Returns None when the source yields no modes. The caller owns the
    returned null space (attach it, then destroy its reference).
    """
    source = slot.resolve(role)
    if source is None:
        return None

    user_modes: List = []
    source(user_modes, system)
    if not user_modes:
        logger.debug("%s source returned no modes; no null space attached.", role.value)
        return None

    modes: List[PETSc.Vec] = []
    try:
        for mode in user_modes:
            v = _raw_vec(mode)
            dup = v.duplicate()
            v.copy(dup)
            modes.append(dup)

        orthonormalize_modes(modes)
        comm = modes[0].getComm()
        nsp = PETSc.NullSpace().create(constant=False, vectors=modes, comm=comm)
    finally:
        for v in modes:
            v.destroy()

    logger.debug("Built %s with %d mode(s).", role.value, len(user_modes))
    return nsp

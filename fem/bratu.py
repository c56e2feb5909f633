"""
1-D Bratu problem  -u'' = lam * exp(u)  on (0, 1), u(0) = u(1) = 0.

Linear elements on a uniform mesh with lumped source term. Boundary values
are imposed through DOF constraints: constrained rows carry r = 0 and an
identity Jacobian row, and the adapter keeps the constrained values exact.

Used by the driver and the tests as a small but genuinely nonlinear FE
problem exercising the residual / Jacobian / combined callback paths.
"""

from __future__ import annotations

import logging
from typing import Optional

import numpy as np

from fem.dof_map import AffineConstraintDofMap
from fem.implicit_system import ImplicitSystem

logger = logging.getLogger(__name__)


def bratu_residual_array(u: np.ndarray, lam: float, constrained: np.ndarray) -> np.ndarray:
    """Full-length residual for nodal values u (constrained rows are zero)."""
    u = np.asarray(u, dtype=np.float64)
    n = u.size - 1
    h = 1.0 / n
    r = np.zeros_like(u)
    r[1:-1] = (2.0 * u[1:-1] - u[:-2] - u[2:]) / h - h * lam * np.exp(u[1:-1])
    r[constrained] = 0.0
    return r


class BratuProblem:
    """Residual / Jacobian provider; usable as residual, jacobian or combined object."""

    def __init__(self, n_elements: int, lam: float = 1.0) -> None:
        n_elements = int(n_elements)
        if n_elements < 2:
            raise ValueError(f"BratuProblem needs at least 2 elements, got {n_elements}")
        self.n_elements = n_elements
        self.lam = float(lam)
        self.h = 1.0 / n_elements

    @property
    def n_dofs(self) -> int:
        return self.n_elements + 1

    def _constrained_mask(self, system) -> np.ndarray:
        dof_map = system.get_dof_map()
        return np.array([dof_map.is_constrained_dof(i) for i in range(self.n_dofs)], dtype=bool)

    def residual(self, X, R, system) -> None:
        lo, hi = R.local_range
        with X.array(readonly=True) as u:
            r = bratu_residual_array(u, self.lam, self._constrained_mask(system))
        rows = np.arange(lo, hi)
        R.set_values(rows, r[lo:hi])

    def jacobian(self, X, J, system) -> None:
        lo, hi = J.row_range
        h, lam = self.h, self.lam
        dof_map = system.get_dof_map()
        with X.array(readonly=True) as u:
            u = np.array(u, copy=True)
        for i in range(lo, hi):
            if dof_map.is_constrained_dof(i):
                J.set_value(i, i, 1.0)
                continue
            J.set_values(
                [i],
                [i - 1, i, i + 1],
                [-1.0 / h, 2.0 / h - h * lam * np.exp(u[i]), -1.0 / h],
            )

    def residual_and_jacobian(self, X, R, J, system) -> None:
        if R is not None:
            self.residual(X, R, system)
        if J is not None:
            self.jacobian(X, J, system)


def build_bratu_system(n_elements: int, *, comm=None, dof_map: Optional[AffineConstraintDofMap] = None) -> ImplicitSystem:
    """ImplicitSystem with n_elements + 1 nodes and homogeneous Dirichlet constraints."""
    dof_map = dof_map if dof_map is not None else AffineConstraintDofMap()
    n_dofs = int(n_elements) + 1
    dof_map.add_constraint(0, rhs=0.0)
    dof_map.add_constraint(n_dofs - 1, rhs=0.0)
    system = ImplicitSystem(n_dofs, comm=comm, dof_map=dof_map, name="bratu")
    logger.debug("Bratu system: n_dofs=%d, constraints=%d", n_dofs, dof_map.n_constraints())
    return system

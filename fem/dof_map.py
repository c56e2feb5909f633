"""
Affine DOF constraints for the reference implicit system.

Each constraint reads u_i = sum_j c_ij * u_j + g_i and is applied in
insertion order, so a constraint may depend on DOFs constrained earlier.
"""

from __future__ import annotations

from typing import Dict, Mapping, Optional, Tuple

import numpy as np


class AffineConstraintDofMap:
    def __init__(self) -> None:
        self._constraints: Dict[int, Tuple[Dict[int, float], float]] = {}
        self._local_range: Tuple[int, int] = (0, 0)

    def set_local_range(self, lo: int, hi: int) -> None:
        self._local_range = (int(lo), int(hi))

    def add_constraint(self, dof: int, coeffs: Optional[Mapping[int, float]] = None, rhs: float = 0.0) -> None:
        dof = int(dof)
        coeffs = {int(j): float(c) for j, c in (coeffs or {}).items()}
        if dof in coeffs:
            raise ValueError(f"constraint on dof {dof} must not reference itself")
        self._constraints[dof] = (coeffs, float(rhs))

    def is_constrained_dof(self, dof: int) -> bool:
        return int(dof) in self._constraints

    def n_constrained_dofs(self) -> int:
        """Constrained DOFs owned by this rank."""
        lo, hi = self._local_range
        return sum(1 for dof in self._constraints if lo <= dof < hi)

    def n_constraints(self) -> int:
        return len(self._constraints)

    def constrain(self, values: np.ndarray) -> None:
        """Apply every constraint in place on a full-length array."""
        for dof, (coeffs, rhs) in self._constraints.items():
            acc = rhs
            for j, c in coeffs.items():
                acc += c * values[j]
            values[dof] = acc

    def enforce_constraints_exactly(self, system, local=None) -> None:
        """
        Make every constrained DOF satisfy its relation exactly.

        With `local` (a view of the all-gathered local buffer) only that
        buffer changes. Without it the distributed system.solution is
        updated, which is collective.
        """
        if not self._constraints:
            return

        if local is not None:
            with local.array() as arr:
                self.constrain(arr)
            return

        solution = system.solution
        values = system.gather(solution)
        self.constrain(values)
        lo, hi = solution.local_range
        owned = np.array([dof for dof in self._constraints if lo <= dof < hi], dtype=np.int64)
        if owned.size:
            solution.set_values(owned, values[owned])
        solution.close()

"""
AffineConstraintDofMap: constraint bookkeeping and exact enforcement.

The distributed path is exercised with a SimpleNamespace system whose
solution records what would be written to PETSc.
"""

from __future__ import annotations

from contextlib import contextmanager
from types import SimpleNamespace

import numpy as np
import pytest

from fem.dof_map import AffineConstraintDofMap


class _RecordingSolution:
    def __init__(self, values, local_range):
        self.values = np.asarray(values, dtype=float)
        self.local_range = local_range
        self.written = {}
        self.closed = 0

    def set_values(self, idx, vals):
        for i, v in zip(idx, vals):
            self.written[int(i)] = float(v)

    def close(self):
        self.closed += 1


class _LocalBuffer:
    def __init__(self, values):
        self.values = np.asarray(values, dtype=float)

    @contextmanager
    def array(self, readonly=False):
        yield self.values


def _dof_map() -> AffineConstraintDofMap:
    dof_map = AffineConstraintDofMap()
    dof_map.add_constraint(0, rhs=1.0)
    dof_map.add_constraint(3, coeffs={0: 0.5, 1: 2.0}, rhs=-1.0)
    return dof_map


def test_bookkeeping():
    dof_map = _dof_map()
    dof_map.set_local_range(0, 2)
    assert dof_map.is_constrained_dof(0)
    assert not dof_map.is_constrained_dof(1)
    assert dof_map.n_constraints() == 2
    # Only dof 0 is owned in [0, 2).
    assert dof_map.n_constrained_dofs() == 1


def test_self_reference_rejected():
    with pytest.raises(ValueError, match="must not reference itself"):
        AffineConstraintDofMap().add_constraint(2, coeffs={2: 1.0})


def test_constraints_apply_in_insertion_order():
    values = np.array([9.0, 2.0, 0.0, 0.0])
    _dof_map().constrain(values)
    # dof 3 sees the already constrained dof 0.
    np.testing.assert_allclose(values, [1.0, 2.0, 0.0, 0.5 * 1.0 + 2.0 * 2.0 - 1.0])


def test_enforce_on_local_buffer_only():
    dof_map = _dof_map()
    solution = _RecordingSolution([0.0] * 4, (0, 4))
    system = SimpleNamespace(solution=solution, gather=lambda view: view.values.copy())
    local = _LocalBuffer([0.0, 1.0, 0.0, 0.0])

    dof_map.enforce_constraints_exactly(system, local)

    np.testing.assert_allclose(local.values, [1.0, 1.0, 0.0, 1.5])
    assert solution.written == {}
    assert solution.closed == 0


def test_enforce_on_distributed_solution_writes_owned_rows():
    dof_map = _dof_map()
    solution = _RecordingSolution([0.0, 1.0, 0.0, 0.0], (2, 4))
    system = SimpleNamespace(solution=solution, gather=lambda view: view.values.copy())

    dof_map.enforce_constraints_exactly(system)

    assert solution.written == {3: pytest.approx(1.5)}
    assert solution.closed == 1


def test_no_constraints_is_a_no_op():
    solution = _RecordingSolution([0.0], (0, 1))
    system = SimpleNamespace(solution=solution, gather=lambda view: view.values.copy())
    AffineConstraintDofMap().enforce_constraints_exactly(system)
    assert solution.closed == 0

"""
Null-space construction from user modes.

Tests:
1. The resulting basis is orthonormal and spans the input modes.
2. Mode 0 keeps its direction.
3. A source returning no modes yields None.
4. User vectors are never modified.
5. Function/object sources are mutually exclusive.
"""

from __future__ import annotations

from types import SimpleNamespace

import numpy as np
import pytest

pytest.importorskip("petsc4py")

from petsc4py import PETSc

from parallel.petsc_views import PetscVectorView
from solvers.nonlinear_callbacks import CallbackRole, CallbackSlot
from solvers.nonlinear_types import SolverConfigurationError
from solvers.null_space import build_mat_null_space, orthonormalize_modes


def _seq_vec(values) -> PETSc.Vec:
    values = np.asarray(values, dtype=PETSc.ScalarType)
    v = PETSc.Vec().createSeq(values.size, comm=PETSc.COMM_SELF)
    v.setArray(values)
    return v


def _as_matrix(vecs) -> np.ndarray:
    return np.column_stack([np.asarray(v.getArray(readonly=True), dtype=float).copy() for v in vecs])


# ---------------------------------------------------------------------------
# Gram-Schmidt
# ---------------------------------------------------------------------------
@pytest.mark.parametrize("n_modes", [1, 2, 3])
def test_orthonormalize_modes(n_modes):
    rng = np.random.default_rng(1234)
    raw = rng.standard_normal((6, n_modes))
    modes = [_seq_vec(raw[:, k]) for k in range(n_modes)]

    orthonormalize_modes(modes)
    Q = _as_matrix(modes)

    np.testing.assert_allclose(Q.T @ Q, np.eye(n_modes), atol=1e-12)
    # Same span as the input.
    np.testing.assert_allclose(Q @ (Q.T @ raw), raw, atol=1e-10)
    # Mode 0 is only rescaled.
    first = raw[:, 0] / np.linalg.norm(raw[:, 0])
    np.testing.assert_allclose(Q[:, 0], first, atol=1e-12)
    for v in modes:
        v.destroy()


# ---------------------------------------------------------------------------
# build_mat_null_space
# ---------------------------------------------------------------------------
def test_empty_source_yields_none():
    slot = CallbackSlot(function=lambda modes, system: None)
    assert build_mat_null_space(slot, system=None) is None


def test_unset_slot_yields_none():
    assert build_mat_null_space(CallbackSlot(), system=None) is None


def test_builds_null_space_without_touching_user_vectors():
    user = [_seq_vec([1.0, 1.0, 1.0, 1.0]), _seq_vec([1.0, 2.0, 3.0, 4.0])]
    before = _as_matrix(user)
    seen = {}

    def source(modes, system):
        seen["system"] = system
        modes.append(user[0])
        modes.append(PetscVectorView(user[1]))

    system = SimpleNamespace(name="fake")
    nsp = build_mat_null_space(CallbackSlot(function=source), system)
    assert isinstance(nsp, PETSc.NullSpace)
    assert seen["system"] is system
    np.testing.assert_array_equal(_as_matrix(user), before)

    basis = nsp.getVecs()
    assert len(basis) == 2
    Q = _as_matrix(basis)
    np.testing.assert_allclose(Q.T @ Q, np.eye(2), atol=1e-12)
    assert not nsp.hasConstant()

    nsp.destroy()
    for v in user:
        v.destroy()


def test_object_source_uses_compute():
    vec = _seq_vec([0.0, 3.0, 4.0])
    obj = SimpleNamespace(compute=lambda modes, system: modes.append(vec))
    nsp = build_mat_null_space(CallbackSlot(obj=obj), None, CallbackRole.NEARNULLSPACE)
    (q,) = nsp.getVecs()
    np.testing.assert_allclose(q.getArray(readonly=True), [0.0, 0.6, 0.8], atol=1e-14)
    nsp.destroy()
    vec.destroy()


def test_both_sources_raise():
    slot = CallbackSlot(function=lambda modes, system: None, obj=SimpleNamespace(compute=lambda m, s: None))
    with pytest.raises(SolverConfigurationError, match="transpose null space"):
        build_mat_null_space(slot, None, CallbackRole.TRANSPOSE_NULLSPACE)


def test_non_vector_mode_is_rejected():
    slot = CallbackSlot(function=lambda modes, system: modes.append([1.0, 2.0]))
    with pytest.raises(TypeError, match="null-space mode"):
        build_mat_null_space(slot, None)

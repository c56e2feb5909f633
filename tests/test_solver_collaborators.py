"""
Preconditioner and solver-configuration collaborators.
"""

from __future__ import annotations

from types import SimpleNamespace

import numpy as np
import pytest

pytest.importorskip("petsc4py")

from petsc4py import PETSc

from parallel.petsc_views import PetscVectorView
from solvers.preconditioner import JacobiPreconditioner, ShellPreconditionerContext
from solvers.solver_configuration import PetscOptionsConfiguration, set_petsc_options


def _diag_matrix(diag) -> PETSc.Mat:
    n = len(diag)
    mat = PETSc.Mat().createAIJ(size=(n, n), nnz=1, comm=PETSc.COMM_SELF)
    mat.setUp()
    for i, d in enumerate(diag):
        mat.setValue(i, i, d)
    mat.assemble()
    return mat


def _seq(values) -> PETSc.Vec:
    values = np.asarray(values, dtype=PETSc.ScalarType)
    v = PETSc.Vec().createSeq(values.size, comm=PETSc.COMM_SELF)
    v.setArray(values)
    return v


# ---------------------------------------------------------------------------
# Preconditioner
# ---------------------------------------------------------------------------
def test_jacobi_scales_by_inverse_diagonal():
    mat = _diag_matrix([2.0, 0.0, 4.0])
    pre = JacobiPreconditioner()
    pre.init()
    pre.set_matrix(mat)
    pre.setup()

    x, y = _seq([2.0, 3.0, 2.0]), _seq([0.0, 0.0, 0.0])
    pre.apply(PetscVectorView(x), PetscVectorView(y))
    # Zero diagonal entries pass the input through.
    np.testing.assert_allclose(y.getArray(), [1.0, 3.0, 0.5])
    pre.destroy()
    mat.destroy()


def test_jacobi_setup_requires_matrix():
    with pytest.raises(RuntimeError, match="before set_matrix"):
        JacobiPreconditioner().setup()


def test_shell_context_forwards_calls():
    calls = []
    pre = SimpleNamespace(
        setup=lambda: calls.append("setup"),
        apply=lambda x, y: calls.append(("apply", x.vec, y.vec)),
    )
    ctx = ShellPreconditionerContext(pre)
    x, y = _seq([1.0]), _seq([0.0])
    ctx.setUp(None)
    ctx.apply(None, x, y)
    assert calls == ["setup", ("apply", x, y)]
    assert (ctx.n_setup, ctx.n_apply) == (1, 1)


# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------
def test_set_petsc_options_with_prefix_and_flags():
    written = set_petsc_options("collab_opts", {"-snes_mf": None, "ksp_max_it": 7})
    assert written == {"snes_mf": None, "ksp_max_it": 7}
    opts = PETSc.Options("collab_opts_")
    assert opts.hasName("snes_mf")
    assert opts.getInt("ksp_max_it") == 7


def test_options_configuration_binds_prefix_and_runs_set_from_options():
    calls = []
    snes = SimpleNamespace(getOptionsPrefix=lambda: "bound_", setFromOptions=lambda: calls.append("setFromOptions"))
    config = PetscOptionsConfiguration({"snes_type": "newtonls"}, late_options={"snes_max_it": 3})
    config.bind(snes)
    config.set_options_during_init()
    config.configure_solver()

    assert config.prefix == "bound_"
    assert calls == ["setFromOptions"]
    opts = PETSc.Options("bound_")
    assert opts.getString("snes_type") == "newtonls"
    assert opts.getInt("snes_max_it") == 3

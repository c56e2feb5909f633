"""
User callback surface of the nonlinear solver adapter.

Each role accepts a bare callable or an object implementing the role's
method. A slot keeps both inputs as given; resolve() turns them into a tagged
ResolvedCallback and reports "both supplied" lazily, at the first callback
that needs the role.

Contracts (X/R/J are PetscVectorView/PetscMatrixView, system is the FE system):
  residual           f(X, R, system)           obj.residual(X, R, system)
  jacobian           f(X, J, system)           obj.jacobian(X, J, system)
  combined           f(X, R, J, system)        obj.residual_and_jacobian(X, R, J, system)
                     (exactly one of R/J is None per call)
  postcheck          f(x, y, w, system)        obj.postcheck(x, y, w, system)
                     -> (changed_search_direction, changed_new_soln) or None
  null space modes   f(modes, system)          obj.compute(modes, system)
                     (append PETSc Vecs or vector views to `modes`)
  presolve           f(system)                 obj.presolve(system)
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Optional, Protocol, runtime_checkable

from solvers.nonlinear_types import SolverConfigurationError


class CallbackRole(str, Enum):
    RESIDUAL = "residual"
    JACOBIAN = "jacobian"
    RESIDUAL_AND_JACOBIAN = "residual_and_jacobian"
    POSTCHECK = "postcheck"
    NULLSPACE = "nullspace"
    TRANSPOSE_NULLSPACE = "transpose_nullspace"
    NEARNULLSPACE = "nearnullspace"
    PRESOLVE = "presolve"


_BOTH_SUPPLIED = {
    CallbackRole.RESIDUAL: "cannot specify both a function and object to compute the Residual",
    CallbackRole.JACOBIAN: "cannot specify both a function and object to compute the Jacobian",
    CallbackRole.RESIDUAL_AND_JACOBIAN: (
        "cannot specify both a function and object to compute the combined Residual & Jacobian"
    ),
    CallbackRole.POSTCHECK: "cannot specify both a function and object for performing the solve postcheck",
    CallbackRole.NULLSPACE: "cannot specify both a function and object to compute the null space",
    CallbackRole.TRANSPOSE_NULLSPACE: (
        "cannot specify both a function and object to compute the transpose null space"
    ),
    CallbackRole.NEARNULLSPACE: "cannot specify both a function and object to compute the near null space",
    CallbackRole.PRESOLVE: "cannot specify both a function and object for the pre-solve hook",
}

# Method an object must provide for each role.
OBJECT_METHODS = {
    CallbackRole.RESIDUAL: "residual",
    CallbackRole.JACOBIAN: "jacobian",
    CallbackRole.RESIDUAL_AND_JACOBIAN: "residual_and_jacobian",
    CallbackRole.POSTCHECK: "postcheck",
    CallbackRole.NULLSPACE: "compute",
    CallbackRole.TRANSPOSE_NULLSPACE: "compute",
    CallbackRole.NEARNULLSPACE: "compute",
    CallbackRole.PRESOLVE: "presolve",
}


@runtime_checkable
class ResidualObject(Protocol):
    def residual(self, X, R, system) -> None: ...


@runtime_checkable
class JacobianObject(Protocol):
    def jacobian(self, X, J, system) -> None: ...


@runtime_checkable
class ResidualAndJacobianObject(Protocol):
    def residual_and_jacobian(self, X, R, J, system) -> None: ...


@runtime_checkable
class PostCheckObject(Protocol):
    def postcheck(self, x, y, w, system): ...


@runtime_checkable
class VectorSubspaceObject(Protocol):
    def compute(self, modes: list, system) -> None: ...


@runtime_checkable
class PreSolveObject(Protocol):
    def presolve(self, system) -> None: ...


@dataclass(frozen=True, slots=True)
class ResolvedCallback:
    """Tagged variant: kind is "function" or "object"."""

    role: CallbackRole
    kind: str
    target: Any

    def __call__(self, *args):
        if self.kind == "function":
            return self.target(*args)
        return getattr(self.target, OBJECT_METHODS[self.role])(*args)


@dataclass(slots=True)
class CallbackSlot:
    function: Optional[Callable[..., Any]] = None
    obj: Optional[Any] = None

    def is_set(self) -> bool:
        return self.function is not None or self.obj is not None

    def is_ambiguous(self) -> bool:
        return self.function is not None and self.obj is not None

    def resolve(self, role: CallbackRole) -> Optional[ResolvedCallback]:
        if self.is_ambiguous():
            raise SolverConfigurationError(_BOTH_SUPPLIED[role])
        if self.function is not None:
            return ResolvedCallback(role, "function", self.function)
        if self.obj is not None:
            method = OBJECT_METHODS[role]
            if not callable(getattr(self.obj, method, None)):
                raise TypeError(
                    f"{role.value} object {type(self.obj).__name__} does not implement {method}()"
                )
            return ResolvedCallback(role, "object", self.obj)
        return None


@dataclass(slots=True)
class NonlinearCallbacks:
    residual: CallbackSlot = field(default_factory=CallbackSlot)
    jacobian: CallbackSlot = field(default_factory=CallbackSlot)
    residual_and_jacobian: CallbackSlot = field(default_factory=CallbackSlot)
    postcheck: CallbackSlot = field(default_factory=CallbackSlot)
    nullspace: CallbackSlot = field(default_factory=CallbackSlot)
    transpose_nullspace: CallbackSlot = field(default_factory=CallbackSlot)
    nearnullspace: CallbackSlot = field(default_factory=CallbackSlot)
    presolve: CallbackSlot = field(default_factory=CallbackSlot)

    def slot(self, role: CallbackRole) -> CallbackSlot:
        return getattr(self, CallbackRole(role).value)

    def has_jacobian_source(self) -> bool:
        # A bare combined function or a combined object both produce Jacobians.
        return self.jacobian.is_set() or self.residual_and_jacobian.is_set()

    def has_postcheck(self) -> bool:
        return self.postcheck.is_set()

    def has_nullspace(self, kind: CallbackRole = CallbackRole.NULLSPACE) -> bool:
        kind = CallbackRole(kind)
        if kind not in (CallbackRole.NULLSPACE, CallbackRole.TRANSPOSE_NULLSPACE, CallbackRole.NEARNULLSPACE):
            raise ValueError(f"{kind.value} is not a null-space role")
        return self.slot(kind).is_set()

    def resolve_residual(self) -> Optional[ResolvedCallback]:
        """
        Pick the residual source: function > object > combined function > combined object.

        Both mutual-exclusion checks run before dispatch, so an ambiguous
        combined slot is reported even when a plain residual is present.
        """
        plain = self.residual.resolve(CallbackRole.RESIDUAL)
        combined = self.residual_and_jacobian.resolve(CallbackRole.RESIDUAL_AND_JACOBIAN)
        return plain or combined

    def resolve_jacobian(self) -> Optional[ResolvedCallback]:
        plain = self.jacobian.resolve(CallbackRole.JACOBIAN)
        combined = self.residual_and_jacobian.resolve(CallbackRole.RESIDUAL_AND_JACOBIAN)
        return plain or combined

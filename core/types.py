"""
Typed configuration containers for the SNES nonlinear solver adapter.

Conventions:
- Tolerances map one-to-one onto SNESSetTolerances / KSPSetTolerances.
- options_prefix is stored normalized: empty, or ending with "_".
- petsc_options are raw PETSc option pairs applied under options_prefix
  during init(); a value of None means a bare flag (e.g. "snes_mf").
"""

from __future__ import annotations

from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Dict, Mapping, Optional

import yaml


def format_options_prefix(prefix: Optional[str]) -> str:
    value = str(prefix or "").strip()
    if not value:
        return ""
    return value if value.endswith("_") else f"{value}_"


@dataclass(slots=True)
class NonlinearSolverConfig:
    """Tolerances, limits and switches consumed by PetscNonlinearSolver.

    Attributes
    ----------
    absolute_residual_tolerance, relative_residual_tolerance, relative_step_tolerance : float
        SNES atol / rtol / stol.
    initial_linear_tolerance : float
        Relative tolerance handed to the inner KSP.
    max_nonlinear_iterations, max_function_evaluations, max_linear_iterations : int
        SNES max_it / max_funcs and KSP max_it.
    zero_out_residual, zero_out_jacobian : bool
        Zero the residual / preconditioning matrix before user code runs.
    default_monitor : bool
        Install the stdout progress monitor in init().
    """

    absolute_residual_tolerance: float = 1.0e-35
    relative_residual_tolerance: float = 1.0e-8
    relative_step_tolerance: float = 1.0e-8
    initial_linear_tolerance: float = 1.0e-12
    max_nonlinear_iterations: int = 50
    max_function_evaluations: int = 10000
    max_linear_iterations: int = 10000
    zero_out_residual: bool = True
    zero_out_jacobian: bool = True
    default_monitor: bool = True
    options_prefix: str = ""
    snes_type: Optional[str] = None
    linesearch_type: Optional[str] = None
    petsc_options: Dict[str, Optional[str]] = field(default_factory=dict)

    def __post_init__(self) -> None:
        for name in (
            "absolute_residual_tolerance",
            "relative_residual_tolerance",
            "relative_step_tolerance",
            "initial_linear_tolerance",
        ):
            value = float(getattr(self, name))
            if not value >= 0.0:
                raise ValueError(f"{name} must be non-negative, got {value!r}")
            setattr(self, name, value)

        for name in ("max_nonlinear_iterations", "max_function_evaluations", "max_linear_iterations"):
            value = int(getattr(self, name))
            if value < 1:
                raise ValueError(f"{name} must be >= 1, got {value}")
            setattr(self, name, value)

        self.options_prefix = format_options_prefix(self.options_prefix)
        if self.petsc_options is None:
            self.petsc_options = {}
        if not isinstance(self.petsc_options, Mapping):
            raise TypeError(
                f"petsc_options: expected mapping, got {type(self.petsc_options).__name__}"
            )
        self.petsc_options = {
            str(k).lstrip("-"): (None if v is None else str(v)) for k, v in self.petsc_options.items()
        }

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "NonlinearSolverConfig":
        """
        Build a config from a mapping.

        Accepts either a flat mapping or one nested under "nonlinear".
        Unknown keys are rejected so that typos in case files fail loudly.
        """
        if d is None:
            return cls()
        if not isinstance(d, Mapping):
            raise TypeError(f"nonlinear config: expected mapping, got {type(d).__name__}")
        raw = d.get("nonlinear", d)
        if raw is None:
            return cls()
        if not isinstance(raw, Mapping):
            raise TypeError(f"nonlinear: expected mapping, got {type(raw).__name__}")

        allowed = {f.name for f in fields(cls)}
        unknown = sorted(set(raw) - allowed)
        if unknown:
            raise ValueError(f"nonlinear: unknown keys {unknown}, allowed={sorted(allowed)}")
        return cls(**dict(raw))


def _read_yaml_text(cfg_file: Path) -> str:
    try:
        return cfg_file.read_text(encoding="utf-8-sig")
    except UnicodeDecodeError:
        return cfg_file.read_text()


def load_case_yaml(cfg_path: str | Path) -> Dict[str, Any]:
    """Load a case YAML file into a plain dict (empty file -> {})."""
    cfg_file = Path(cfg_path).expanduser().resolve()
    raw = yaml.safe_load(_read_yaml_text(cfg_file)) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"{cfg_file}: top-level YAML must be a mapping")
    return raw


def load_solver_config(cfg_path: str | Path) -> NonlinearSolverConfig:
    """Load the nonlinear solver block of a case YAML file."""
    return NonlinearSolverConfig.from_dict(load_case_yaml(cfg_path))

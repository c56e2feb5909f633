"""
Driver for the reference Bratu case solved through PetscNonlinearSolver.

Responsibilities:
- Parse driver flags; forward everything else to PETSc before it initializes.
- Load the nonlinear solver block and the problem block from a case YAML.
- Build the Bratu system, solve, report the convergence reason.
"""

from __future__ import annotations

import argparse
import logging
import sys
import traceback
from typing import Any, Dict, Optional, Sequence, Tuple

from core.logging_utils import get_log_level_from_env, is_root_rank, setup_logging
from core.types import NonlinearSolverConfig, load_case_yaml
from parallel.mpi_bootstrap import bootstrap_mpi_before_petsc

logger = logging.getLogger(__name__)

_PROBLEM_DEFAULTS: Dict[str, Any] = {
    "n_elements": 32,
    "lam": 1.0,
    "callbacks": "separate",
}


def _get_rank() -> int:
    try:
        from mpi4py import MPI

        return int(MPI.COMM_WORLD.Get_rank())
    except Exception:
        return 0


def _problem_settings(raw: Dict[str, Any], n_elements: Optional[int], lam: Optional[float]) -> Dict[str, Any]:
    problem = dict(_PROBLEM_DEFAULTS)
    block = raw.get("problem") or {}
    if not isinstance(block, dict):
        raise ValueError(f"problem: expected mapping, got {type(block).__name__}")
    unknown = sorted(set(block) - set(_PROBLEM_DEFAULTS))
    if unknown:
        raise ValueError(f"problem: unknown keys {unknown}, allowed={sorted(_PROBLEM_DEFAULTS)}")
    problem.update(block)
    if n_elements is not None:
        problem["n_elements"] = int(n_elements)
    if lam is not None:
        problem["lam"] = float(lam)
    if problem["callbacks"] not in ("separate", "combined"):
        raise ValueError(f"problem.callbacks must be 'separate' or 'combined', got {problem['callbacks']!r}")
    return problem


def run_case(
    cfg_path: str,
    *,
    prefix: Optional[str] = None,
    max_nonlinear_iterations: Optional[int] = None,
    n_elements: Optional[int] = None,
    lam: Optional[float] = None,
    quiet: bool = False,
    log_level: int | str = logging.INFO,
) -> int:
    """Run one Bratu case. Return 0 when SNES converged, 2 when it diverged."""
    rank = _get_rank()
    setup_logging(rank, level=get_log_level_from_env(default=log_level), quiet_nonroot=True)

    try:
        raw = load_case_yaml(cfg_path)
        nl = dict(raw.get("nonlinear") or {})
        if prefix is not None:
            nl["options_prefix"] = prefix
        if max_nonlinear_iterations is not None:
            nl["max_nonlinear_iterations"] = int(max_nonlinear_iterations)
        if quiet:
            nl["default_monitor"] = False
        config = NonlinearSolverConfig.from_dict(nl)
        problem = _problem_settings(raw, n_elements, lam)
    except (OSError, ValueError, TypeError) as exc:
        logger.error("Invalid case file %s: %s", cfg_path, exc)
        return 2

    from fem.bratu import BratuProblem, build_bratu_system
    from solvers.petsc_nonlinear_solver import PetscNonlinearSolver

    bratu = BratuProblem(problem["n_elements"], lam=problem["lam"])
    system = build_bratu_system(bratu.n_elements)
    jac = system.create_matrix(nnz_per_row=3)
    res = system.create_vector()
    try:
        solver = PetscNonlinearSolver(system, config)
        if problem["callbacks"] == "combined":
            solver.attach_residual_and_jacobian(obj=bratu)
        else:
            solver.attach_residual(obj=bratu)
            solver.attach_jacobian(obj=bratu)

        if is_root_rank(system.comm):
            logger.info(
                "Bratu case: n_elements=%d lam=%.4g callbacks=%s prefix=%r",
                bratu.n_elements,
                bratu.lam,
                problem["callbacks"],
                config.options_prefix,
            )

        result = solver.solve(jac, system.solution, res)
        solver.print_converged_reason()
        u = system.solution_array()
        logger.info(
            "its=%d |F|_2=%.6e lin_its=%d max(u)=%.6e",
            result.n_iter,
            result.res_norm_2,
            result.n_linear_iterations,
            float(u.max()),
        )
        return 0 if result.converged else 2
    except Exception:
        logger.error("Unhandled exception:\n%s", traceback.format_exc())
        return 99
    finally:
        jac.destroy()
        res.destroy()
        system.destroy()


def _parse_args(argv: Optional[Sequence[str]] = None) -> Tuple[argparse.Namespace, list[str]]:
    parser = argparse.ArgumentParser(description="Solve the Bratu reference case with PETSc SNES.")
    parser.add_argument("case_yaml", help="Path to case YAML file.")
    parser.add_argument(
        "--prefix",
        default=None,
        help="Override PETSc options prefix (default: use YAML).",
    )
    parser.add_argument(
        "--max_nonlinear_iterations",
        type=int,
        default=None,
        help="Override SNES max_it (default: use YAML).",
    )
    parser.add_argument("--n_elements", type=int, default=None, help="Override problem.n_elements.")
    parser.add_argument("--lam", type=float, default=None, help="Override problem.lam.")
    parser.add_argument("--quiet", action="store_true", help="Disable the per-step residual monitor.")
    args, unknown = parser.parse_known_args(argv)
    return args, list(unknown)


def main(argv: Optional[Sequence[str]] = None) -> int:
    args, petsc_args = _parse_args(argv)
    # Prevent PETSc from parsing driver-specific CLI flags.
    sys.argv = [sys.argv[0]] + list(petsc_args)
    bootstrap_mpi_before_petsc(sys.argv)
    return run_case(
        args.case_yaml,
        prefix=args.prefix,
        max_nonlinear_iterations=args.max_nonlinear_iterations,
        n_elements=args.n_elements,
        lam=args.lam,
        quiet=args.quiet,
    )


if __name__ == "__main__":  # pragma: no cover
    raise SystemExit(main())

"""
Smoke tests for driver/run_nonlinear_case.py.
"""

from __future__ import annotations

import pytest

pytest.importorskip("petsc4py")

from driver.run_nonlinear_case import _parse_args, _problem_settings, run_case


def _write_case(tmp_path, prefix: str, callbacks: str = "separate", extra: str = ""):
    path = tmp_path / f"{prefix}case.yaml"
    path.write_text(
        "problem:\n"
        "  n_elements: 8\n"
        "  lam: 1.0\n"
        f"  callbacks: {callbacks}\n"
        "nonlinear:\n"
        f"  options_prefix: {prefix}\n"
        "  absolute_residual_tolerance: 1.0e-10\n"
        "  default_monitor: true\n" + extra,
        encoding="utf-8",
    )
    return path


def test_parse_args_forwards_unknown_to_petsc():
    args, petsc_args = _parse_args(["case.yaml", "--lam", "2.0", "-snes_view", "--quiet"])
    assert args.case_yaml == "case.yaml"
    assert args.lam == pytest.approx(2.0)
    assert args.quiet
    assert petsc_args == ["-snes_view"]


def test_problem_settings_overrides_and_validation():
    problem = _problem_settings({"problem": {"n_elements": 4}}, None, 0.5)
    assert problem == {"n_elements": 4, "lam": 0.5, "callbacks": "separate"}
    with pytest.raises(ValueError, match="unknown keys"):
        _problem_settings({"problem": {"size": 4}}, None, None)
    with pytest.raises(ValueError, match="callbacks"):
        _problem_settings({"problem": {"callbacks": "both"}}, None, None)


@pytest.mark.parametrize("callbacks", ["separate", "combined"])
def test_run_case_converges(tmp_path, capsys, callbacks):
    path = _write_case(tmp_path, f"drv_{callbacks}_", callbacks=callbacks)
    assert run_case(str(path)) == 0
    out = capsys.readouterr().out
    assert "  NL step  0, |residual|_2 = " in out
    assert "Nonlinear solver convergence/divergence reason: CONVERGED_" in out


def test_run_case_reports_divergence(tmp_path, capsys):
    path = _write_case(tmp_path, "drv_div_")
    assert run_case(str(path), max_nonlinear_iterations=1, quiet=True) == 2
    out = capsys.readouterr().out
    assert "NL step" not in out
    assert "DIVERGED_MAX_IT" in out


def test_run_case_rejects_bad_config(tmp_path):
    path = _write_case(tmp_path, "drv_bad_", extra="  max_its: 3\n")
    assert run_case(str(path)) == 2
    assert run_case(str(tmp_path / "missing.yaml")) == 2

"""
Solver-configuration hooks.

A SolverConfiguration gets two chances to touch PETSc: once while the SNES is
being created (set_options_during_init) and once right before SNESSolve
(configure_solver), after every other setting, so it wins.
"""

from __future__ import annotations

import logging
from typing import Dict, Mapping, Optional, Protocol, runtime_checkable

from core.types import format_options_prefix
from parallel.mpi_bootstrap import get_petsc

logger = logging.getLogger(__name__)


@runtime_checkable
class SolverConfiguration(Protocol):
    def set_options_during_init(self) -> None: ...

    def configure_solver(self) -> None: ...


def set_petsc_options(prefix: str, options: Mapping[str, Optional[str]]) -> Dict[str, Optional[str]]:
    """
    Write option pairs into the PETSc options database under `prefix`.

    A None value inserts a bare flag. Returns the pairs actually written.
    """
    PETSc = get_petsc()
    opts = PETSc.Options(format_options_prefix(prefix))
    written: Dict[str, Optional[str]] = {}
    for key, value in options.items():
        name = str(key).lstrip("-")
        if value is None:
            opts.setValue(name, None)
        else:
            opts.setValue(name, str(value))
        written[name] = value
    return written


class PetscOptionsConfiguration:
    """
    Options-database based SolverConfiguration.

    `options` are written during init; `late_options` are written in
    configure_solver() and followed by snes.setFromOptions() on the bound
    SNES so they override everything set before.
    """

    def __init__(
        self,
        options: Optional[Mapping[str, Optional[str]]] = None,
        *,
        prefix: str = "",
        late_options: Optional[Mapping[str, Optional[str]]] = None,
    ) -> None:
        self.options = dict(options or {})
        self.late_options = dict(late_options or {})
        self.prefix = format_options_prefix(prefix)
        self.snes = None

    def bind(self, snes) -> None:
        self.snes = snes
        if not self.prefix:
            self.prefix = format_options_prefix(snes.getOptionsPrefix())

    def set_options_during_init(self) -> None:
        if self.options:
            set_petsc_options(self.prefix, self.options)
            logger.debug("init-time PETSc options (prefix=%r): %s", self.prefix, self.options)

    def configure_solver(self) -> None:
        if self.late_options:
            set_petsc_options(self.prefix, self.late_options)
            logger.debug("late PETSc options (prefix=%r): %s", self.prefix, self.late_options)
        if self.snes is not None:
            self.snes.setFromOptions()

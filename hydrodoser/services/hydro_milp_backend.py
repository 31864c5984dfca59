"""
MILP solver handle.

The formula optimizer builds PuLP models and hands them to a MilpBackend for
solving. The backend creates the underlying solver lazily, at most once, under
a lock, so concurrent callers share one initialization. Callers may inject
their own backend (for a different PuLP solver or for tests); otherwise a
process-wide default wrapping CBC is used.
"""
import logging
import threading
from typing import Any, Callable, Optional

import pulp

logger = logging.getLogger(__name__)

_DEFAULT_BACKEND = None
_DEFAULT_BACKEND_LOCK = threading.Lock()


class MilpBackendUnavailableError(RuntimeError):
    """Raised when a MILP solve is required but no solver can be created."""
    pass


class MilpSolveError(RuntimeError):
    """Raised when the solver returns a non-optimal status."""

    def __init__(self, status: str, message: str = ""):
        self.status = status
        super().__init__(message or f"MILP solve failed with status '{status}'")


def _default_solver_factory() -> Any:
    return pulp.PULP_CBC_CMD(msg=False)


class MilpBackend:
    """Lazily-initialised, lock-guarded holder of a PuLP solver."""

    def __init__(self, solver_factory: Optional[Callable[[], Any]] = None):
        self._solver_factory = solver_factory or _default_solver_factory
        self._solver = None
        self._lock = threading.Lock()

    def get_solver(self) -> Any:
        """
        Return the memoized solver, creating it on first use.
        A failed initialization is not cached; the next call retries.
        """
        solver = self._solver
        if solver is not None:
            return solver

        with self._lock:
            if self._solver is None:
                try:
                    candidate = self._solver_factory()
                except pulp.PulpSolverError as e:
                    raise MilpBackendUnavailableError(f"MILP dependencies not loaded: {e}") from e
                if not candidate.available():
                    raise MilpBackendUnavailableError(
                        f"MILP dependencies not loaded: {type(candidate).__name__} is not available"
                    )
                logger.info(f"[MILP] Solver initialized: {type(candidate).__name__}")
                self._solver = candidate
            return self._solver

    def is_available(self) -> bool:
        try:
            self.get_solver()
        except MilpBackendUnavailableError as e:
            logger.debug(f"[MILP] {e}")
            return False
        return True

    def solve(self, problem: pulp.LpProblem) -> str:
        """Solve in place and return the PuLP status name ('Optimal', 'Infeasible', ...)."""
        solver = self.get_solver()
        try:
            problem.solve(solver)
        except pulp.PulpSolverError as e:
            raise MilpSolveError("Error", f"MILP solver error: {e}") from e
        return pulp.LpStatus[problem.status]


def get_default_backend() -> MilpBackend:
    """Process-wide default backend, created once."""
    global _DEFAULT_BACKEND

    if _DEFAULT_BACKEND is not None:
        return _DEFAULT_BACKEND

    with _DEFAULT_BACKEND_LOCK:
        if _DEFAULT_BACKEND is None:
            _DEFAULT_BACKEND = MilpBackend()
        return _DEFAULT_BACKEND

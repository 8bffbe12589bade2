from .blocks.aux import CallbackSignal, ExitStatus, OptimizeResult, UOAConfig
from .dfo import DFOSolver, SolverState, minimize

__all__ = [
    "CallbackSignal",
    "DFOSolver",
    "ExitStatus",
    "OptimizeResult",
    "SolverState",
    "UOAConfig",
    "minimize",
]

__version__ = "0.1.0"

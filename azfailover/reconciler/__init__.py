from .convergence import (
    ConvergenceObservation,
    ConvergencePoller,
    ConvergenceResult,
    ConvergenceStatus,
    ConvergenceVerdict,
    VerdictReason,
    evaluate_convergence,
)
from .planner import ExclusionPlan, NetworkTopology, plan
from .reconciler import DrillResult, DrillStatus, FailoverController

"""工作流模块初始化。"""

from kubeboot.workflow.errors import (
    ContextInitializationError,
    InvalidPhaseConfigurationError,
    PhaseConditionError,
    PhaseExecutionError,
    UnknownPhaseError,
    WorkflowError,
)
from kubeboot.workflow.phase import Phase, maximum_n_args, no_args
from kubeboot.workflow.runner import (
    PhaseRunner,
    PhaseStatus,
    Runner,
    RunnerOptions,
    compute_phase_run_flags,
    flatten_phases,
)

__all__ = [
    "Phase",
    "no_args",
    "maximum_n_args",
    "PhaseRunner",
    "PhaseStatus",
    "Runner",
    "RunnerOptions",
    "compute_phase_run_flags",
    "flatten_phases",
    "WorkflowError",
    "UnknownPhaseError",
    "InvalidPhaseConfigurationError",
    "PhaseConditionError",
    "PhaseExecutionError",
    "ContextInitializationError",
]

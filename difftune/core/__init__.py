"""DiffTune core: sensitivity-propagation gain tuning for a two-inertia drive train.

PERFORMANCE NOTES:
- Plant and controller Jacobians are analytic; autodiff.py is for checking them only
- One rollout integrates 4 + 4*3 states per sample; prefer rk4 for short experiments
"""

from .control import (
    PICascadeController,
    SuperTwistingController,
    build_controller,
)

from .params import (
    GAIN_NAMES,
    DriveTrainParams,
    make_gains,
    project_gains,
)

from .reference import (
    sine_reference,
    time_grid,
    zero_reference,
)

from .sensitivity import (
    SensitivityPropagator,
    StepSensitivity,
)

from .simulator import (
    IntegratorConfig,
    Simulator,
)

from .systems.drive_train import TwoInertiaPlant

from .tuning import (
    DiffTuneLoop,
    IterationRecord,
    LoopState,
    RolloutResult,
    TuningConfig,
    TuningResult,
    TuningStatus,
    rollout_with_sensitivity,
)

from .utils import (
    IntegrationFailure,
    NumericDivergence,
)

__all__ = [
    # Plant / controller
    "DriveTrainParams",
    "TwoInertiaPlant",
    "SuperTwistingController",
    "PICascadeController",
    "build_controller",
    # Gains
    "GAIN_NAMES",
    "make_gains",
    "project_gains",
    # Reference
    "time_grid",
    "sine_reference",
    "zero_reference",
    # Simulation / sensitivity
    "IntegratorConfig",
    "Simulator",
    "SensitivityPropagator",
    "StepSensitivity",
    # Tuning loop
    "TuningConfig",
    "DiffTuneLoop",
    "IterationRecord",
    "RolloutResult",
    "TuningResult",
    "TuningStatus",
    "LoopState",
    "rollout_with_sensitivity",
    # Errors
    "NumericDivergence",
    "IntegrationFailure",
]

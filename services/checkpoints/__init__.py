"Deterministic multi-horizon checkpoint engine."

from .assessment import (  # noqa: F401
    LOWER_IS_BETTER,
    SIGNIFICANCE_THRESHOLD,
    assess_metrics,
    build_comparison,
    classify_metric,
    fallback_reasoning,
    top_metric,
)
from .horizons import (  # noqa: F401
    DECISION_HORIZON,
    HORIZONS,
    compute_windows,
    get_eligible_horizons,
)
from .presentation import build_horizon_chips, format_checkpoint_observation  # noqa: F401
from .transitions import resolve_status_transition  # noqa: F401

from wealthsim.simulation.engine import (
    Phase, MonthRecord, History, SimulationOptions, HistoryAnalysis,
    get_stress_return, simulate, analyze_history
)
from wealthsim.simulation.metrics import (
    PathMetrics, SorrSample, success_threshold_real, shortfall_tolerance,
    first_fill_month, extract_path_metrics, extract_sorr_sample
)

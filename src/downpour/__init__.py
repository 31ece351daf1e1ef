__all__ = [
    "LoadDriver",
    "WorkloadSpec",
    "load_spec",
    "Report",
    "RunStatus",
    "OutcomeSink",
    "DeadlineController",
    "render_report",
    "render_latency_histogram",
    "render_timeline",
    "render_stress",
    "Scenario",
    "ScenarioRunner",
    "StressStep",
    "run_stress_test",
    "performance_check",
]


from .aggregator import OutcomeSink
from .config import WorkloadSpec, load_spec
from .core import LoadDriver
from .deadline import DeadlineController
from .models import Report, RunStatus
from .rendering import render_report, render_latency_histogram, render_stress, render_timeline
from .models import StressStep
from .scenarios import Scenario, ScenarioRunner, performance_check, run_stress_test

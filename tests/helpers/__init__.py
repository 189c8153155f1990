from .fakes import STANFORD_HTML, FakeBrowser, FakeClock, FakeEngine, FakeLauncher
from .metric_delta import histogram_observes, metric_delta, metric_increases, metric_value

__all__ = [
    "STANFORD_HTML",
    "FakeBrowser",
    "FakeClock",
    "FakeEngine",
    "FakeLauncher",
    "histogram_observes",
    "metric_delta",
    "metric_increases",
    "metric_value",
]

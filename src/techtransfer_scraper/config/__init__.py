from .config import (
    CircuitBreakerConfig,
    Config,
    CrawlEngineConfig,
    EnginePoolConfig,
    EnginesConfig,
    FederalConfig,
    MonitoringConfig,
    OrchestratorConfig,
    QueueConfig,
    QueueSettings,
    RateLimitSettings,
    RenderEngineConfig,
    RetrySettings,
    StaticEngineConfig,
    find_config_file,
    settings,
)

__all__ = [
    "CircuitBreakerConfig",
    "Config",
    "CrawlEngineConfig",
    "EnginePoolConfig",
    "EnginesConfig",
    "FederalConfig",
    "MonitoringConfig",
    "OrchestratorConfig",
    "QueueConfig",
    "QueueSettings",
    "RateLimitSettings",
    "RenderEngineConfig",
    "RetrySettings",
    "StaticEngineConfig",
    "find_config_file",
    "settings",
]

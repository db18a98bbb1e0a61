"""
Configuration Settings Module

Provides configuration management for the Location Health Engine
using Pydantic v2 and pydantic-settings.

Author: GG
Version: 0.1.0
Date: 2025-09-16
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

logger = logging.getLogger(__name__)


class EngineConfig(BaseSettings):
    """
    Task queue, dispatcher and scheduler settings.
    """

    model_config = SettingsConfigDict(env_prefix='ENGINE_')

    max_concurrent_tasks: int = Field(default=5, description="Maximum tasks running at once")
    health_check_interval_seconds: float = Field(default=30.0, description="Interval of the stale-location scan")
    cache_cleanup_interval_seconds: float = Field(default=3600.0, description="Interval of the expired-cache sweep")
    staleness_window_hours: float = Field(default=2.0, description="Age after which a health result is recomputed")
    task_timeout_seconds: float = Field(default=60.0, description="Per-task execution timeout")
    dispatch_delay_seconds: float = Field(default=0.1, description="Pause before re-pumping the queue after a task finishes")

    max_cache_age_seconds: float = Field(default=86400.0, description="TTL of cached health scores and trends")
    predictive_cache_age_seconds: float = Field(default=3600.0, description="TTL of cached forecasts")

    history_limit: int = Field(default=90, description="Score history points used for trend analysis")
    forecast_history_limit: int = Field(default=60, description="Metric history points used for forecasting")
    task_history_size: int = Field(default=1000, description="Finished tasks kept for status polling")

    @field_validator('max_concurrent_tasks')
    @classmethod
    def validate_concurrency(cls, v):
        if v <= 0:
            raise ValueError("max_concurrent_tasks must be positive")
        return v

    @field_validator(
        'health_check_interval_seconds',
        'cache_cleanup_interval_seconds',
        'staleness_window_hours',
        'task_timeout_seconds',
    )
    @classmethod
    def validate_positive_interval(cls, v):
        if v <= 0:
            raise ValueError("Intervals and timeouts must be positive")
        return v

    @field_validator('dispatch_delay_seconds')
    @classmethod
    def validate_dispatch_delay(cls, v):
        if v < 0:
            raise ValueError("dispatch_delay_seconds cannot be negative")
        return v


class ScoringConfig(BaseSettings):
    """
    Health scoring policy: component weights, status thresholds and
    forecast baselines.
    """

    model_config = SettingsConfigDict(env_prefix='SCORING_')

    component_weights: Dict[str, float] = Field(
        default_factory=lambda: {
            'financial': 0.35,
            'operational': 0.35,
            'team': 0.15,
            'customer': 0.10,
            'market': 0.03,
            'technology': 0.02,
        },
        description="Weight of each component in the overall score",
    )
    healthy_threshold: float = Field(default=70.0, description="Minimum score for healthy status")
    warning_threshold: float = Field(default=40.0, description="Minimum score for warning status")
    issue_threshold: float = Field(default=40.0, description="Metric scores below this are reported as issues")
    critical_flag_threshold: float = Field(default=30.0, description="Metric scores below this are critical flags")

    default_forecast_period: int = Field(default=30, description="Forecast horizon in periods")
    forecast_baselines: Dict[str, float] = Field(
        default_factory=lambda: {'revenue': 25000.0, 'leads': 35.0, 'deals': 8.0},
        description="Baseline values used when history is insufficient",
    )
    default_baseline: float = Field(default=100.0, description="Baseline for unknown metric types")

    @field_validator('component_weights')
    @classmethod
    def validate_weights(cls, v):
        if any(weight < 0 for weight in v.values()):
            raise ValueError("Component weights cannot be negative")
        if not any(weight > 0 for weight in v.values()):
            raise ValueError("At least one component weight must be positive")
        return v

    @field_validator('default_forecast_period')
    @classmethod
    def validate_period(cls, v):
        if v <= 0:
            raise ValueError("Forecast period must be positive")
        return v


class MetricsGatewayConfig(BaseSettings):
    """
    Metrics ingestion API settings.
    """

    model_config = SettingsConfigDict(env_prefix='METRICS_')

    base_url: str = Field(default="http://localhost:3000", description="Base URL of the metrics API")
    metrics_path: str = Field(default="/api/ghl/metrics/cached", description="Path of the cached metrics endpoint")
    timeout_seconds: float = Field(default=30.0, description="HTTP request timeout")
    max_retries: int = Field(default=3, description="Maximum attempts per fetch")
    retry_delay_seconds: float = Field(default=1.0, description="Initial delay between attempts")

    @field_validator('base_url')
    @classmethod
    def validate_base_url(cls, v):
        if not v.startswith(('http://', 'https://')):
            raise ValueError("Metrics base URL must include protocol (http:// or https://)")
        return v.rstrip('/')


class DatabaseConfig(BaseSettings):
    """
    Database configuration settings.
    """

    model_config = SettingsConfigDict(env_prefix='DATABASE_')

    database_url: str = Field(default="sqlite+aiosqlite:///data/health_engine.db", description="Database connection URL")
    echo_sql: bool = Field(default=False, description="Echo SQL queries to console")


@dataclass
class LoggingConfig:
    """
    Logging configuration settings.
    """

    level: str = field(default="INFO")
    format: str = field(default="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
    date_format: str = field(default="%Y-%m-%d %H:%M:%S")

    log_to_file: bool = field(default=True)
    log_file_path: str = field(default="data/logs/engine.log")
    max_file_size_mb: int = field(default=10)
    backup_count: int = field(default=5)

    log_to_console: bool = field(default=True)
    console_color: bool = field(default=True)

    module_levels: Dict[str, str] = field(default_factory=lambda: {
        'core.dispatcher': 'INFO',
        'core.scheduler': 'INFO',
        'integrations.metrics_gateway': 'INFO',
        'storage.state_manager': 'INFO',
    })

    enable_performance_logging: bool = field(default=True)
    enable_structured_logging: bool = field(default=True)
    log_context: bool = field(default=True)


class AppConfig(BaseSettings):
    """
    Main application configuration class.
    """

    model_config = SettingsConfigDict(
        env_file='.env',
        env_file_encoding='utf-8',
        case_sensitive=False,
        extra='ignore',
    )

    app_name: str = Field(default="Location Health Engine", description="Application name")
    app_version: str = Field(default="0.1.0", description="Application version")
    environment: str = Field(default="development", description="Deployment environment")
    debug_mode: bool = Field(default=False, description="Enable debug mode")

    data_dir: Path = Field(default=Path("data"), description="Base data directory")
    logs_dir: Path = Field(default=Path("data/logs"), description="Logs directory")

    enable_metrics: bool = Field(default=True, description="Enable periodic metrics logging")
    metrics_interval_seconds: float = Field(default=600.0, description="Interval of the metrics log line")

    engine: EngineConfig = Field(default_factory=EngineConfig)
    scoring: ScoringConfig = Field(default_factory=ScoringConfig)
    metrics_gateway: MetricsGatewayConfig = Field(default_factory=MetricsGatewayConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)

    def logging_dict(self) -> Dict[str, Any]:
        return {
            'level': self.logging.level,
            'format': self.logging.format,
            'date_format': self.logging.date_format,
            'log_to_file': self.logging.log_to_file,
            'log_file_path': self.logging.log_file_path,
            'max_file_size_mb': self.logging.max_file_size_mb,
            'backup_count': self.logging.backup_count,
            'log_to_console': self.logging.log_to_console,
            'console_color': self.logging.console_color,
            'module_levels': self.logging.module_levels,
            'enable_performance_logging': self.logging.enable_performance_logging,
            'enable_structured_logging': self.logging.enable_structured_logging,
            'log_context': self.logging.log_context,
            'logs_dir': str(self.logs_dir),
        }

    def export_config(self, include_secrets: bool = False) -> Dict[str, Any]:
        config_dict = {}
        sections = ['engine', 'scoring', 'metrics_gateway', 'database']
        for section_name in sections:
            section_dict = getattr(self, section_name).model_dump()
            if not include_secrets:
                secret_keys = ['password', 'secret', 'token', 'database_url']
                for key in list(section_dict.keys()):
                    if any(secret_key in key.lower() for secret_key in secret_keys):
                        section_dict[key] = "***HIDDEN***"
            config_dict[section_name] = section_dict
        return config_dict


_config: Optional[AppConfig] = None


def get_config() -> AppConfig:
    """
    Get the global configuration instance.

    Returns:
        Global AppConfig instance
    """
    global _config
    if _config is None:
        _config = AppConfig()
        logger.info(f"Configuration loaded for environment: {_config.environment}")
    return _config


def reload_config() -> AppConfig:
    """
    Reload configuration from environment and files.

    Returns:
        Reloaded AppConfig instance
    """
    global _config
    _config = AppConfig()
    return _config


__all__ = [
    'AppConfig',
    'EngineConfig',
    'ScoringConfig',
    'MetricsGatewayConfig',
    'DatabaseConfig',
    'LoggingConfig',
    'get_config',
    'reload_config',
]

"""
Custom Exception Classes

Defines engine-specific exceptions for better error handling.

Author: Development Team
Date: 2025-09-16
"""


class HealthEngineError(Exception):
    pass


class ConfigurationError(HealthEngineError):
    pass


class ApplicationError(HealthEngineError):
    pass


class TaskQueueError(HealthEngineError):
    pass


class DuplicateTaskError(TaskQueueError):
    pass


class TaskStateError(TaskQueueError):
    pass


class DispatcherError(HealthEngineError):
    pass


class TaskTimeoutError(DispatcherError):
    pass


class MetricsUnavailableError(HealthEngineError):
    pass


class MetricsGatewayError(HealthEngineError):
    pass


class ScoringError(HealthEngineError):
    pass


class PersistenceError(HealthEngineError):
    pass

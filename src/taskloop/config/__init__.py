from taskloop.config.settings import (
    LoggingSettings,
    ParserSettings,
    RetrySettings,
    RunnerSettings,
    SessionSettings,
    Settings,
    TodoSettings,
    VerificationSettings,
    get_settings,
    load_settings,
    reset_settings,
)

__all__ = [
    "LoggingSettings",
    "ParserSettings",
    "RetrySettings",
    "RunnerSettings",
    "SessionSettings",
    "Settings",
    "TodoSettings",
    "VerificationSettings",
    "get_settings",
    "load_settings",
    "reset_settings",
]

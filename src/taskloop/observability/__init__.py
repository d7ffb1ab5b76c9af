from taskloop.observability.logger import (
    bind_session,
    clear_session,
    configure_logging,
    get_logger,
    session_context,
    setup_logging,
    setup_logging_from_settings,
)

__all__ = [
    "bind_session",
    "clear_session",
    "configure_logging",
    "get_logger",
    "session_context",
    "setup_logging",
    "setup_logging_from_settings",
]

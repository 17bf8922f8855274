"""Logfire observability for the Library Circulation server."""

import logging

import logfire

from .config import ObservabilityConfig

logger = logging.getLogger(__name__)


def initialize_observability(config: ObservabilityConfig | None = None) -> None:
    """Configure Logfire. Called once at server start-up."""
    config = config or ObservabilityConfig()

    if not config.enabled:
        logger.debug("Observability disabled via configuration")
        logfire.configure(send_to_logfire=False, console=False)
        return

    logfire.configure(
        token=config.token or None,
        service_name=config.project_name,
        environment=config.environment,
        send_to_logfire=config.send_mode,
        console=None if config.console_output else False,
    )
    logger.info(
        "Observability initialized (environment=%s, export=%s)",
        config.environment,
        config.send_mode,
    )


__all__ = [
    "ObservabilityConfig",
    "initialize_observability",
]

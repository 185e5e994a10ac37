"""Entry point for the CSV Reconciliation Tool."""

import logging

import structlog

from web_app import app


def configure_logging(level: int = logging.INFO):
    """Render structlog events as key=value lines at the given level."""
    structlog.configure(
        processors=[
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.dev.ConsoleRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
    )


def main():
    """Launch the reconciliation web service."""
    configure_logging()
    app.run(debug=False)


if __name__ == "__main__":
    main()

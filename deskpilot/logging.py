# This Source Code Form is subject to the terms of the Mozilla Public
# License, v. 2.0. If a copy of the MPL was not distributed with this
# file, You can obtain one at https://mozilla.org/MPL/2.0/.
"""Logging configuration for deskpilot.

Library modules only emit through ``loguru.logger`` with structured keyword
fields; the command line entry point installs the single stderr sink.
"""

import sys
from typing import TYPE_CHECKING

from loguru import logger


if TYPE_CHECKING:
    from loguru import Record


LEVEL_COLORS = {
    "DEBUG": "dim",
    "INFO": "blue",
    "WARNING": "yellow",
    "ERROR": "red",
    "CRITICAL": "red",
}


def _log_format(record: "Record") -> str:
    """Build the format string for one record, with extras as ``key=value``."""
    color = LEVEL_COLORS.get(record["level"].name, "white")
    fmt = f"<dim>{{time:HH:mm:ss}}</dim> <{color}>{{level: <7}}</{color}> {{message}}"

    extra = record["extra"]
    if extra:
        fields = " ".join(f"{key}={value!r}" for key, value in extra.items())
        # Extras are spliced into the format string; typed text may hold braces or tags
        fields = fields.replace("{", "{{").replace("}", "}}").replace("<", r"\<")
        fmt += f" <dim>{fields}</dim>"

    fmt += "\n"
    if record["exception"]:
        fmt += "{exception}\n"
    return fmt


def configure_logging(level: str = "INFO") -> None:
    """Send deskpilot logs at ``level`` and above to stderr."""
    logger.remove()
    logger.add(sys.stderr, level=level, format=_log_format, colorize=True)

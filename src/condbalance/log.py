"""Provides basic logging configuration for condbalance.

All loggers live below the base logger ``condbalance``. Messages that
belong to a balancer operation are prefixed with the session and
participant they concern, so that log entries can be matched to
individual participants.
"""

import copy
import logging
from pathlib import Path
from typing import Union


#: Name of the logger that all condbalance loggers descend from.
BASE_LOGGER = "condbalance"

LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


def prepare_file_handler(filepath: Union[str, Path]) -> logging.FileHandler:
    """Returns a :class:`~logging.FileHandler` and creates the necessary
    directories on the fly, if needed.

    Args:
        filepath: Absolute path to the targeted logfile.
    """
    logpath = Path(filepath)

    if not logpath.is_absolute():
        raise ValueError("Value of filepath must be an absolute path.")

    if logpath.is_dir():
        raise ValueError("Value of filepath must point to a file.")

    logdir = logpath.parent
    logdir.mkdir(parents=True, exist_ok=True)

    return logging.FileHandler(str(logpath))


def prepare_formatter(study_id: str) -> logging.Formatter:
    """Returns a :class:`~logging.Formatter` with the standard condbalance
    logging format, including the study id.
    """

    formatter = logging.Formatter(
        ("%(asctime)s - %(name)s - %(levelname)s - " f"study id={study_id} - %(message)s")
    )

    return formatter


def parse_level(level: str) -> int:
    """Parses level definitions in lower case strings and returns the
    approriate level attribute of the Python logging library.
    """
    lvl = level.upper()
    if lvl not in LEVELS:
        raise ValueError("log level must be debug, info, warning, error or critical")
    return getattr(logging, lvl)


class BalanceLoggingInterface:
    """Interface for logging balancer operations.

    Wraps a standard library logger and prefixes every message with the
    session id and participant id the interface is bound to.

    Args:
        logger: Name of the logger to use. Defaults to the module
            logger of :mod:`condbalance.balancer`.

    Attributes:
        session_id (str): Session id included in logged messages.
            Defaults to "NA".
        participant_id (str): Participant id included in logged messages.
            Defaults to "NA".

    Examples:
        >>> log = BalanceLoggingInterface()
        >>> plog = log.bind(participant_id="p1", session_id="s1")
        >>> plog.info("Assigned condition 3.")
    """

    def __init__(self, logger: str = None):
        name = logger if logger is not None else f"{BASE_LOGGER}.balancer"
        self.logger = logging.getLogger(name)
        self.session_id = "NA"
        self.participant_id = "NA"

    def bind(self, participant_id=None, session_id=None) -> "BalanceLoggingInterface":
        """Returns a copy of the interface, bound to the given ids."""
        bound = copy.copy(self)
        if participant_id is not None:
            bound.participant_id = participant_id
        if session_id is not None:
            bound.session_id = session_id
        return bound

    def setLevel(self, level: str):
        self.logger.setLevel(parse_level(level))

    def _handle_msg(self, msg: str, level: str, *args, **kwargs):
        prefix = f"session id={self.session_id} - participant id={self.participant_id} - "
        getattr(self.logger, level)(prefix + msg, *args, **kwargs)

    def log(self, level: str, msg: str, *args, **kwargs):
        self._handle_msg(msg, level, *args, **kwargs)

    def debug(self, msg: str, *args, **kwargs):
        self._handle_msg(msg, "debug", *args, **kwargs)

    def info(self, msg: str, *args, **kwargs):
        self._handle_msg(msg, "info", *args, **kwargs)

    def warning(self, msg: str, *args, **kwargs):
        self._handle_msg(msg, "warning", *args, **kwargs)

    def error(self, msg: str, *args, **kwargs):
        self._handle_msg(msg, "error", *args, **kwargs)

    def critical(self, msg: str, *args, **kwargs):
        self._handle_msg(msg, "critical", *args, **kwargs)

    def exception(self, msg: str, *args, **kwargs):
        self._handle_msg(msg, "exception", *args, **kwargs)

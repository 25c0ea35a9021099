"""
Logging Utilities for the Weight Durations Pipeline

This module provides hierarchical logging to track the flow of the pipeline
stages (fetch, normalize, collapse, reconcile, assemble, persist).

The NestedLogger class indents messages according to how deeply the current
stage is nested, so that a run over tens of thousands of ICU stays can be
followed stage by stage. Messages are emitted through the standard `logging`
module; timestamps and levels come from the configured handler format.

Features:
- Automatic indentation based on stage nesting depth
- Simple start/end logging pattern for functions
- Info/debug messages written at the current nesting level (row counts,
  dropped-record counts)
"""
import logging

LOGGER_NAME = "weight_durations"


class NestedLogger:
    """
    A logger that indents messages to visualize nested pipeline stages.

    Each `log_start` increases the indentation level and each `log_end`
    decreases it, producing a tree-like trace in the log output.

    Attributes:
        _nesting_level (int): Current indentation level (0 = no indentation)
        _logger (logging.Logger): Underlying standard library logger
    """

    def __init__(self, name: str = LOGGER_NAME):
        self._nesting_level = 0
        self._logger = logging.getLogger(name)

    def _get_indent(self) -> str:
        """
        Get indentation string based on current nesting level.

        Returns:
            str: String of spaces (4 spaces per nesting level)
        """
        return "    " * self._nesting_level

    def log_start(self, function_name: str) -> None:
        """
        Log the start of a stage and increase the nesting level.

        Args:
            function_name (str): Name of the function being started

        Example output:
            2015-01-01 10:30:45,123 - weight_durations - INFO - Started get_weight_durations
            2015-01-01 10:30:45,124 - weight_durations - INFO -     Started get_stays
        """
        self._logger.info(f"{self._get_indent()}Started {function_name}")
        self._nesting_level += 1

    def log_end(self, function_name: str) -> None:
        """
        Decrease the nesting level and log the end of a stage.

        Args:
            function_name (str): Name of the function being completed
        """
        if self._nesting_level > 0:
            self._nesting_level -= 1

        self._logger.info(f"{self._get_indent()}Finished {function_name}")

    def log_info(self, message: str) -> None:
        """Log an informational message at the current nesting level."""
        self._logger.info(f"{self._get_indent()}{message}")

    def log_debug(self, message: str) -> None:
        """Log a debug message at the current nesting level."""
        self._logger.debug(f"{self._get_indent()}{message}")


# Shared instance so nesting state is consistent across modules
logger = NestedLogger()

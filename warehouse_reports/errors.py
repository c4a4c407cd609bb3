from __future__ import annotations

from typing import Dict


class WarehouseReportsError(Exception):
    """Base class for errors raised by this package."""


class ConfigError(WarehouseReportsError):
    pass


class InvariantViolation(WarehouseReportsError):
    """
    A result did not have the shape the pipeline relies on.

    Never retried: running the same query again returns the same shape.
    """


class TransientError(WarehouseReportsError):
    """A fault that is expected to clear on its own (lost connection, throttling)."""


class ExportBatchError(WarehouseReportsError):
    """
    Raised once a batch has finished when some units of work failed.

    failures maps package id -> the exception that abandoned its export.
    """

    def __init__(self, failures: Dict[str, BaseException]) -> None:
        self.failures = dict(failures)
        sample = ", ".join(sorted(self.failures)[:5])
        more = "" if len(self.failures) <= 5 else f" (+{len(self.failures) - 5} more)"
        super().__init__(f"{len(self.failures)} package export(s) failed: {sample}{more}")

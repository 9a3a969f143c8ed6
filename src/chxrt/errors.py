from __future__ import annotations


class SchemaError(KeyError):
    """A required input field is absent or has the wrong type."""

    def __init__(self, field: str, reason: str = "missing") -> None:
        super().__init__(field)
        self.field = field
        self.reason = reason

    def __str__(self) -> str:
        return f"{self.field}: {self.reason}"


class EmptyCohortError(ValueError):
    def __init__(self, cohort: str) -> None:
        super().__init__(f"Cohort {cohort!r} has no subjects after filtering.")
        self.cohort = cohort


class FitConvergenceError(RuntimeError):
    """A single regression did not produce a usable estimate."""

    def __init__(self, cell: tuple[str, str], reason: str) -> None:
        super().__init__(f"{cell[0]} x {cell[1]}: {reason}")
        self.cell = cell
        self.reason = reason

"""Error taxonomy for rarcheck.

Definition errors are detected while a model is loaded or a search is set up,
before any candidate instance is explored. They are always fatal for the run.

`EngineFault` is different: it signals that the engine broke one of its own
invariants (for example, the enumerator produced a tuple set that violates the
field's multiplicity). It is never caught inside the library.
"""

from __future__ import annotations

from typing import Optional

__all__ = [
    "DefinitionError",
    "DuplicateType",
    "UnknownParent",
    "UnknownType",
    "UnboundVariable",
    "TypeMismatch",
    "ScopeExceeded",
    "FormulaSyntaxError",
    "DuplicateConstraint",
    "UnknownConstraint",
    "ModelFileError",
    "EngineFault",
]


class DefinitionError(Exception):
    """Base class for load-time errors.

    Attributes:
        message: What went wrong.
        where: The declaration or constraint the error belongs to.
        line, column: Position inside a formula (1-based), when known.
    """

    code = "DefinitionError"

    def __init__(
        self,
        message: str,
        *,
        where: Optional[str] = None,
        line: Optional[int] = None,
        column: Optional[int] = None,
    ):
        super().__init__(message)
        self.message = message
        self.where = where
        self.line = line
        self.column = column

    @property
    def location(self) -> str:
        parts = []
        if self.where:
            parts.append(self.where)
        if self.line is not None:
            parts.append(f"line {self.line}, column {self.column}")
        return ", ".join(parts)

    def __str__(self) -> str:
        loc = self.location
        return f"{self.code}: {self.message}" + (f" ({loc})" if loc else "")


class DuplicateType(DefinitionError):
    code = "DuplicateType"


class UnknownParent(DefinitionError):
    code = "UnknownParent"


class UnknownType(DefinitionError):
    code = "UnknownType"


class UnboundVariable(DefinitionError):
    code = "UnboundVariable"


class TypeMismatch(DefinitionError):
    code = "TypeMismatch"


class ScopeExceeded(DefinitionError):
    code = "ScopeExceeded"


class FormulaSyntaxError(DefinitionError):
    code = "FormulaSyntaxError"


class DuplicateConstraint(DefinitionError):
    code = "DuplicateConstraint"


class UnknownConstraint(DefinitionError):
    code = "UnknownConstraint"


class ModelFileError(DefinitionError, ValueError):
    code = "ModelFileError"


class EngineFault(RuntimeError):
    """The engine violated one of its own invariants. Abort the run."""

"""Event filters built from filter expressions."""

import logging
from abc import ABC, abstractmethod

from buildnotify.cel.compiler import CheckError, Compiler, Program
from buildnotify.cel.lexer import LexError
from buildnotify.cel.parser import ParseError, parse
from buildnotify.cel.schema import BOOL, BUILD, BUILD_REGISTRY
from buildnotify.errors import EvaluationError, FilterCompileError
from buildnotify.models.build import BuildEvent

logger = logging.getLogger(__name__)


class EventFilter(ABC):
    """Decides whether a build event warrants a notification."""

    @abstractmethod
    def apply(self, event: BuildEvent) -> bool:
        """Return True iff the filter evaluates successfully and matches."""
        ...


class FilterPredicate(EventFilter):
    """An EventFilter backed by a compiled filter expression.

    Compiled once, then shared read-only by every request.
    """

    def __init__(self, expression: str, program: Program):
        self._expression = expression
        self._program = program

    @property
    def expression(self) -> str:
        return self._expression

    def apply(self, event: BuildEvent) -> bool:
        try:
            result = self._program.eval({"build": event})
        except EvaluationError as e:
            logger.warning(
                f"Filter {self._expression!r} failed on build {event.id!r}, treating as no match: {e}"
            )
            return False
        except Exception as e:
            logger.exception(f"Unexpected error evaluating filter {self._expression!r}: {e}")
            return False

        if not isinstance(result, bool):
            logger.error(f"Filter {self._expression!r} produced non-boolean {result!r}")
            return False
        return result


def compile_filter(expression: str) -> Program:
    """Parse and type-check a filter against the build schema."""
    if not expression.strip():
        raise FilterCompileError(expression, "filter expression is empty")
    try:
        tree = parse(expression)
        program = Compiler(BUILD_REGISTRY, {"build": BUILD}).compile(tree)
    except (LexError, ParseError, CheckError) as e:
        raise FilterCompileError(expression, f"failed to compile filter: {e}") from e
    except RecursionError as e:
        raise FilterCompileError(expression, "failed to compile filter: expression too deep") from e
    if program.type != BOOL:
        raise FilterCompileError(
            expression, f"filter must have a boolean result type, but was {program.type}"
        )
    return program


def make_predicate(expression: str) -> FilterPredicate:
    """Compile a filter expression into a FilterPredicate."""
    return FilterPredicate(expression, compile_filter(expression))

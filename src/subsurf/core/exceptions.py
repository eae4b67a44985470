"""
Custom exception hierarchy for the Subsurf system.

Two channels are kept apart:
- fatal errors (configuration problems, broken dependency graphs, reading a
  field nobody can produce) are raised and never recovered inside the library;
- numerical trouble inside a time step (non-convergence, inadmissible trial
  solutions) is reported as a ``StepStatus`` by the integrator, not raised.
"""
from typing import Optional, Any, Dict
from dataclasses import dataclass


@dataclass
class ErrorContext:
    """Context information for errors"""
    key: Optional[str] = None
    tag: Optional[str] = None
    component: Optional[str] = None
    operation: Optional[str] = None
    details: Optional[Dict[str, Any]] = None


class SubsurfError(Exception):
    """Base exception for all Subsurf errors"""

    def __init__(self, message: str, context: Optional[ErrorContext] = None):
        super().__init__(message)
        self.message = message
        self.context = context or ErrorContext()

    def __str__(self) -> str:
        context_str = ""
        if self.context.key:
            context_str += f" [Key: {self.context.key}]"
        if self.context.tag:
            context_str += f" [Tag: {self.context.tag}]"
        if self.context.component:
            context_str += f" [Component: {self.context.component}]"
        if self.context.operation:
            context_str += f" [Operation: {self.context.operation}]"

        return f"{self.__class__.__name__}: {self.message}{context_str}"


# Configuration errors
class ConfigurationError(SubsurfError):
    """Missing, malformed or conflicting option"""
    pass


class DuplicateOwnerError(ConfigurationError):
    """A second evaluator claimed a (key, tag) that already has an owner"""
    pass


class DependencyCycleError(ConfigurationError):
    """The evaluator dependency graph is not acyclic"""
    pass


# Dependency-graph programming errors
class DependencyError(SubsurfError):
    """Base class for field resolution errors"""
    pass


class UnresolvedDependency(DependencyError):
    """No evaluator or primary source exists for a requested field"""
    pass


class StaleDependency(DependencyError):
    """A field was read before it was brought up to date"""
    pass


class UnsupportedDerivative(DependencyError):
    """An evaluator cannot differentiate with respect to the requested key"""
    pass


# Numerical errors
class NumericalError(SubsurfError):
    """Base class for numerical errors"""
    pass


class ConvergenceError(NumericalError):
    """Time stepping failed even at the smallest permitted step size"""
    pass


class LinearSolverError(NumericalError):
    """The preconditioner could not be factored or applied"""
    pass


def handle_exception(exc: Exception, context: Optional[ErrorContext] = None) -> SubsurfError:
    """
    Wrap generic exceptions in SubsurfError hierarchy.
    Useful for categorizing errors raised by third-party numerics.
    """
    if isinstance(exc, SubsurfError):
        return exc

    error_map = {
        KeyError: UnresolvedDependency,
        ValueError: ConfigurationError,
        ArithmeticError: NumericalError,
        RuntimeError: LinearSolverError,
    }

    for exc_type, subsurf_exc_type in error_map.items():
        if isinstance(exc, exc_type):
            return subsurf_exc_type(str(exc), context)

    return SubsurfError(str(exc), context)

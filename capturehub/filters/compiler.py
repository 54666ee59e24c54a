"""
CaptureHub BPF Compiler

Translates structured filter expressions into Berkeley Packet Filter syntax.
Every caller that needs a BPF string goes through this module.

Rules are joined strictly left to right with no grouping, so
``tcp or udp and port 53`` is emitted exactly in that order and the capture
engine applies its own precedence.
"""

import structlog

from capturehub.filters.models import (
    FilterExpression,
    FilterKind,
    FilterRule,
    FilterSpec,
    FilterValidationError,
    LogicalOperator,
)

logger = structlog.get_logger(__name__)


def _direction(rule: FilterRule) -> str:
    return "src" if rule.sub_kind == "src" else "dst"


def compile_rule(rule: FilterRule) -> str:
    """
    Render a single rule as a BPF fragment.

    Values are emitted verbatim; address syntax is checked by the capture
    engine when it compiles the program.

    Raises:
        FilterValidationError: the rule kind is not recognized
    """
    try:
        kind = FilterKind(rule.kind)
    except ValueError:
        raise FilterValidationError(f"Unknown filter kind: {rule.kind!r}") from None

    if kind == FilterKind.IP:
        return f"{_direction(rule)} host {rule.value}"
    if kind == FilterKind.PORT:
        return f"{_direction(rule)} port {rule.value}"
    if kind == FilterKind.PROTOCOL:
        return str(rule.sub_kind).lower()
    return f"ether {_direction(rule)} {rule.value}"


def compile_expression(expression: FilterExpression) -> str:
    """
    Compile an expression into a BPF string.

    Args:
        expression: Ordered rules; every rule after the first is prefixed
            with its logical operator (``and`` when missing or malformed)

    Returns:
        The BPF filter, or "" for an empty expression

    Examples:
        src host 10.0.0.5 and dst port 80
        tcp or udp
    """
    parts: list[str] = []

    for index, rule in enumerate(expression):
        if index > 0:
            parts.append(" or " if rule.logical_operator == LogicalOperator.OR else " and ")
        parts.append(compile_rule(rule))

    return "".join(parts)


def compile_filter(spec: FilterSpec | None) -> str | None:
    """
    Resolve any filter spec to the string sent to an agent.

    Raw strings are passed through untouched. Empty filters resolve to
    None so that no filter is sent at all.
    """
    if spec is None:
        return None

    if isinstance(spec, str):
        return spec or None

    bpf = compile_expression(spec)
    logger.debug("bpf_compiled", rules=len(spec), bpf=bpf)
    return bpf or None


class BpfCompiler:
    """Injectable wrapper around the module-level compile functions."""

    def compile(self, expression: FilterExpression) -> str:
        return compile_expression(expression)

    def resolve(self, spec: FilterSpec | None) -> str | None:
        return compile_filter(spec)


# Singleton instance
_compiler_instance: BpfCompiler | None = None


def get_compiler() -> BpfCompiler:
    """Get or create the global compiler."""
    global _compiler_instance
    if _compiler_instance is None:
        _compiler_instance = BpfCompiler()
    return _compiler_instance

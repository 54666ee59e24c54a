"""
CaptureHub Capture Filters

Structured filter model, BPF compiler and saved presets.
"""

from capturehub.filters.compiler import BpfCompiler, compile_expression, compile_filter
from capturehub.filters.models import (
    FilterExpression,
    FilterKind,
    FilterRule,
    FilterSpec,
    FilterValidationError,
    LogicalOperator,
)
from capturehub.filters.presets import FilterPreset, FilterPresetStore

__all__ = [
    "BpfCompiler",
    "compile_expression",
    "compile_filter",
    "FilterExpression",
    "FilterKind",
    "FilterRule",
    "FilterSpec",
    "FilterValidationError",
    "LogicalOperator",
    "FilterPreset",
    "FilterPresetStore",
]

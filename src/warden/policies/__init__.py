"""
Policy expressions and versioned policy management.

The expression language is used by step ``when`` / ``approve_if`` and by
approver expressions.
"""

from warden.policies.expressions import (
    Expression,
    compile_expression,
    is_truthy,
    looks_like_expression,
)

__all__ = [
    "Expression",
    "compile_expression",
    "is_truthy",
    "looks_like_expression",
]

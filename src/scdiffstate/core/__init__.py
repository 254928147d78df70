"""
Core data structures for differential state analysis.

1. ExpressionTable: gene × cell layers with sample/cluster/group annotations
2. Transform: abstract base class for immutable table transformations

Design Philosophy:
    - Immutability: all operations return new instances
    - Validation: constructors check shapes and label consistency
    - Composability: transforms chain into preprocessing pipelines
"""

from scdiffstate.core.expression import DS_LABELS, ExpressionTable
from scdiffstate.core.transform import Transform

__all__ = [
    'DS_LABELS',
    'ExpressionTable',
    'Transform',
]

"""flowcore - dependency-aware execution core.

Drives node/edge workflow graphs and decomposed task graphs with resumable,
persisted state.
"""

__version__ = "0.1.0"

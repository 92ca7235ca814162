"""flowcore - typed dataflow-graph engine.

Flows are graphs of typed nodes wired by connections and template references.
The engine validates them statically and executes them with traced,
self-describing per-node output.
"""

__version__ = "0.1.0"

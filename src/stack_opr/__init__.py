"""Stack operator engine.

Declarations flow through model -> graph -> reconciler -> planner ->
executor; engine.StackEngine wires them to a backend and state store.
"""

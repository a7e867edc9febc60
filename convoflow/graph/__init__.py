# =============================================================================
# Graph Package — Execution Engine
# =============================================================================
#   - state.py: RunState schema and explicit per-field merge rules
#   - engine.py: StateGraph builder, CompiledGraph runner, RunConfig
#   - middleware.py: Node interceptors (logging, timing, observability)
# =============================================================================

from convoflow.graph.engine import END, START, CompiledGraph, RunConfig, StateGraph, StepEvent

__all__ = ["END", "START", "CompiledGraph", "RunConfig", "StateGraph", "StepEvent"]

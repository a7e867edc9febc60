# =============================================================================
# Tools Package — Pluggable Capabilities
# =============================================================================
#   - registry.py: ToolDefinition + ToolRegistry (lookup, subsets, catalog)
#   - sandbox.py: Permission/intent checks, deadlines, retries, fallbacks
#   - builtin.py: calculator, weather, web_search, retrieval tools
# =============================================================================

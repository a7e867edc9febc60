# =============================================================================
# Agents Package — Retrieval/Evaluation Pipeline
# =============================================================================
# Each module implements one graph node (async fn(state, config) -> dict):
#   - selector.py: choose {category, query} retrieval tasks
#   - retriever.py: run retrieval tools, accumulate documents
#   - reranker.py: category-aware rescoring and filtering
#   - evaluator.py: adequacy + tool-necessity judgments
#   - widen.py: loosen retrieval parameters, refine queries
#   - tool_router.py: select and run an external tool
#   - synthesizer.py: numbered-context answer generation
#   - guardrail.py: final answer checks
#   - orchestrator.py: graph assembly + public run API
#
# Loop: select → retrieve → rerank → evaluate → widen → select ... bounded
# by max_rag_loops.
# =============================================================================

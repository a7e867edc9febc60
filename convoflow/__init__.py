# =============================================================================
# convoflow — Conversational RAG Orchestration Core
# =============================================================================
# Runs a retrieval-augmented conversation as a graph of async steps:
# select sources → retrieve → rerank → evaluate → (widen | tool) →
# synthesise → guard, checkpointing encrypted state after every step.
#
# Package structure:
#   convoflow/
#   ├── graph/        → Execution engine (StateGraph, middleware, RunState)
#   ├── agents/       → Pipeline nodes and graph assembly
#   ├── tools/        → Tool registry, sandbox, built-in tools
#   ├── services/     → LLM, crypto, checkpoint store, auth, observability
#   ├── db/           → Database engine, session, and ORM models
#   ├── models/       → Pydantic V2 request/response schemas
#   ├── api/          → FastAPI route handlers (chat, admin)
#   └── workers/      → Celery app and checkpoint TTL sweep
# =============================================================================

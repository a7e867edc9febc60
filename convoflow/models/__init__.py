# =============================================================================
# Models Package — Pydantic V2 Schemas
# =============================================================================
# Request/response schemas for the HTTP API. These are SEPARATE from the
# database models (convoflow/db/models.py) and from the in-graph RunState
# (convoflow/graph/state.py): clients never see encrypted blobs or
# per-task scratch data.
# =============================================================================

# =============================================================================
# API Package — FastAPI Route Handlers
# =============================================================================
#   - chat.py: Run, stream, inspect, resume, and delete conversations
#   - admin.py: Checkpoint statistics and TTL cleanup
#   - deps.py: API key authentication → Principal
#   - audit.py: Request audit logging middleware
# =============================================================================

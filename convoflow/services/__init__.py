# =============================================================================
# Services Package — Infrastructure Behind the Pipeline
# =============================================================================
#   - llm.py: Multi-provider LLM abstraction + structured invocation
#   - crypto.py: AES-GCM field encryption for checkpoint state
#   - checkpoints.py: Encrypted, access-controlled checkpoint store
#   - auth.py: Principals, roles, permissions, API key hashing
#   - observability.py: Span/event hooks consumed by every node
#   - content.py: Search backend and content source interfaces
# =============================================================================

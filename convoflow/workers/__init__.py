# =============================================================================
# Workers Package — Celery Background Tasks
# =============================================================================
#   - celery_app.py: Celery application configuration + beat schedule
#   - tasks.py: Periodic checkpoint TTL sweep
#
# The sweep is an administrative job that must run even when no API
# traffic arrives, so it lives in Celery beat rather than in a request.
# =============================================================================

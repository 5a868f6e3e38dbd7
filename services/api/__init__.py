"""
Ingestion API Service - FastAPI Application

Responsibilities:
- Accept GDS export batches and pasted e-ticket emails
- Report executor queue, backoff and cooldown state
- Let operators force a cooldown

Endpoints:
- POST /api/batches - Run a batch of documents
- POST /api/emails - Run a pasted e-ticket email
- GET /api/status - Queue, backoff and cooldown snapshot
- POST /api/cooldown - Force a cooldown
- GET /health - Health check
"""

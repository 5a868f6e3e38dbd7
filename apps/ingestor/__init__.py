"""
Ingestor App - Rate-Limited Ticket Ingestion

Responsibilities:
- Serialize every extraction call through one adaptive rate limiter
- Retry rate-limited calls with exponential backoff and jitter
- Halt batches and enter cooldown on sustained overload
- Turn extracted tickets into Ticket -> Client -> Booking -> Invoice chains,
  through the workflow service or the step-by-step fallback
- Skip documents already recorded in the synced-file ledger
- Sync an inbox directory on a cron schedule

Output:
- tickets, clients, bookings, invoices and synced_files records
- Redis event: channel=ingest.jobs, payload={type, agency_id, summary, ts}
"""

"""
External collaborators and call-safety helpers.

- resilience: timeouts, retry with backoff, circuit breaker
- audit_client: HTTP audit gateway (events, org directory, metadata)
- summarizer: LLM-backed diff summaries
- publisher: webhook notification publisher
"""

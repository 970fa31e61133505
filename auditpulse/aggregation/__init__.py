"""
AuditPulse Aggregation & Dispatch Core.

Components:
- classifier: action code → change category (static rule table)
- extractor: best-effort identifier extraction from display text
- buffer: sliding-window session buffer over the coalescing store
- listener: expiry notifications → single-winner claim → processing
- enrichment: per-category metadata / summarization with graceful fallback
- dispatcher: one notification payload per session
- orchestrator: poll loop, manual cycles, forced flush
"""

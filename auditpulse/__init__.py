"""
AuditPulse — debounced configuration-change notifications.

Architecture:
    auditpulse/
    ├── aggregation/     # Classifier, session buffer, expiry listener,
    │                    # enrichment router, dispatcher, orchestrator
    ├── store/           # Coalescing store (Redis, in-memory)
    ├── services/        # HTTP collaborators, summarizer, publisher, resilience
    ├── schemas.py       # Pydantic models (events, sessions, payloads)
    ├── ports.py         # Collaborator protocols
    └── config.py        # Settings

Data Flow:
    Audit Source → Orchestrator → Classifier → Session Buffer
    → [timer expiry] → Expiry Listener → Enrichment Router → Dispatcher
    → Publisher

Guarantees:
    - One notification per coalescing window per key
    - At-most-once delivery (a claimed session is never re-published)
    - Enrichment failures degrade the message, never suppress it

Version: 1.0.0
"""

__version__ = "1.0.0"

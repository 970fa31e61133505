"""
Coalescing Store adapters.

- redis_store: production store (TTL timer keys, GETDEL claim, keyevent pub/sub)
- memory: in-process store with a controllable clock (tests, local runs)
"""

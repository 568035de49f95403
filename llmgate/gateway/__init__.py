"""AI provider gateway.

Provides async infrastructure for calling AI providers with:
  - Provider Adapters (wire formats, auth, error mapping, retries)
  - Response Normalizer (canonical DTOs, streaming parsers)
  - Rate Limiter (token buckets per scope, sliding window)
  - Quota Manager (reserve / confirm / release budgets)
  - Cache Layer (request fingerprints, TTL policy)
  - Usage Tracker (one record per call)
"""

"""Gemini API Gateway Layer.

Wraps every call to the remote generative-AI API with:
  - Client Lifecycle Manager (single live handle, mock mode)
  - Retry/Timeout Engine (exponential backoff, error classification)
  - Bounded TTL Cache (LRU eviction, background sweep)
  - Key Rotation Pool (encrypted credentials, four selection strategies)
  - Call Interceptor (persisted call records, secret redaction)
  - Metrics & Alerting Logger (rolling window stats, Prometheus export)
"""

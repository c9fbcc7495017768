"""
ReefScan Gateway — Services Layer
==================================

What:  Business logic between routes (HTTP) and storage (Redis, PostgreSQL).

Service Inventory:
    - RateLimiter:       daily / per-minute / global admission quotas
    - KeyPool:           picks the healthiest primary-provider API key
    - CircuitBreaker:    per-provider CLOSED / OPEN / HALF_OPEN state machine
    - CacheService:      image-result cache and request idempotency
    - AnalysisProvider:  contract for vision providers (Gemini, OpenAI)
    - AnalysisService:   orchestrates one analysis request end to end
    - AuthService:       device registration and JWT lifecycle
    - UsageService:      durable request log and daily rollup
    - MetricsService:    operational dashboard aggregation

Every Redis-backed service receives its store in the constructor; the module
singletons at the bottom of each file wire in the process-wide store.
"""

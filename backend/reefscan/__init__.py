"""
ReefScan Gateway — Application Package Initializer
===================================================

What: Marks the `reefscan` directory as a Python package.
Why:  Enables module imports like `from reefscan.config import settings`.
Who:  Used by Alembic, pytest and uvicorn (`uvicorn reefscan.main:app`).

Architecture Note:
    The gateway sits between the mobile apps and two vision-AI providers:

    ┌─────────────────────────────────────┐
    │      Routes + Middleware (HTTP)     │  ← auth, headers, error envelope
    ├─────────────────────────────────────┤
    │   Orchestrator (AnalysisService)    │  ← admission → cache → provider
    ├──────────────┬──────────────────────┤
    │ Redis-backed │  Provider adapters   │  ← rate limiter, key pool,
    │ coordination │  (Gemini / OpenAI)   │    circuit breaker, cache
    ├──────────────┴──────────────────────┤
    │   PostgreSQL (devices, usage log)   │
    └─────────────────────────────────────┘

    Every gateway instance is stateless: counters, cooldowns and circuit
    states live in Redis, so any number of instances can serve traffic.
"""

__version__ = "1.0.0"

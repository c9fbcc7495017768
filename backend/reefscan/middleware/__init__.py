# Middleware package init
"""
ReefScan Gateway — Middleware Package
======================================

What:  Cross-cutting concerns applied to every request.

Middleware Chain (order matters!):
    Request → [IP Rate Limit] → [Request ID] → [Logging] → [GZip] → [CORS] → Route

    1. IP rate limit first: reject floods before any other work
    2. Request ID: correlation id for logs and the error envelope
    3. Logging: one access line per request with status and duration
"""

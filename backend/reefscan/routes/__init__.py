# Routes package init
"""
ReefScan Gateway — API Routes Package
======================================

Route Inventory:
    - auth.py:     POST /v1/auth/register, /v1/auth/refresh, /v1/auth/revoke
                   GET  /v1/auth/me
    - analyze.py:  POST /v1/analyze
                   GET  /v1/analyze/status
    - usage.py:    GET  /v1/usage, /v1/usage/stats
    - account.py:  GET  /v1/account/export, DELETE /v1/account
    - metrics.py:  GET  /v1/metrics
    - health.py:   GET  /health, GET /

Routes stay thin: parse the request, call one service, shape headers.
Errors propagate as ReefScanError subclasses to the handlers in main.py.
"""

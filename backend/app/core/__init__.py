"""
Core package — cross-cutting concerns.

Modules:
    config        — environment variables & settings
    logging       — structured JSON logging
    errors        — exception hierarchy & handlers
    health        — health check aggregation
    middleware    — request id & timing
    redis_client  — async Redis connection for the retry store
"""

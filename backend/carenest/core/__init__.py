"""
Core package — cross-cutting concerns.

Modules:
    config          — environment variables & settings
    logging_config  — structured JSON / pretty logging
    errors          — exception hierarchy & handlers
    middleware      — request logging, correlation IDs
    database        — SQLAlchemy engine and session factory
    health          — health check aggregation
"""

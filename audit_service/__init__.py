"""
Operations Audit Service
========================

Records operation events published by other services and serves the most
recent ones:
- PostgreSQL as the single store (asyncpg connection pool)
- PostgreSQL LISTEN/NOTIFY as the upstream event source
- FastAPI query endpoint served by uvicorn
"""

__version__ = "1.0.0"
__author__ = "Audit Service Team"

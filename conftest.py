"""Global pytest configuration."""

import os

# Set environment defaults for tests before any imports
os.environ.setdefault("DATABASE_URL", "sqlite+aiosqlite:///:memory:")
os.environ.setdefault("DEFERRED_STORE_BACKEND", "memory")
os.environ.setdefault("DEFERRED_START_WORKERS", "false")

"""Risk policy engine, SQLite storage and Flask HTTP service for approving or blocking DeFi transactions."""

__version__ = "0.1.0"
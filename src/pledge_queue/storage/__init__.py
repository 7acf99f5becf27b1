"""SQLite storage: engine policy, ORM tables and Alembic runner."""

"""Database engine policy, ORM tables and migrations for the task store."""

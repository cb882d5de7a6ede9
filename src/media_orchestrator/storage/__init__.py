"""SQLite persistence layer: ORM tables, engine policy, and migrations."""

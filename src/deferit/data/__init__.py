"""Package data for deferit (database schema)."""

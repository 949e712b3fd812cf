"""SQLite storage for durable work item records."""

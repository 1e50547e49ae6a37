"""SQLite persistence for chat sessions."""

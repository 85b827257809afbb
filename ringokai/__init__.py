"""Core engine for the ringokai gift-exchange community."""

"""Domain models, events and errors."""

"""Social graph services."""

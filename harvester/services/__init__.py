"""External service collaborators."""

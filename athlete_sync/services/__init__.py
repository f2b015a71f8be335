"""External collaborators: document store and plan generation."""

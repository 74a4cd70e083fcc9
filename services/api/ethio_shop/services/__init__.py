"""Services wrapping external collaborators."""

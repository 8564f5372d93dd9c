"""Business logic: matching, assignment, completion, ratings and request intake."""

"""AI collaborators used for grading, rubric parsing and similarity checks."""

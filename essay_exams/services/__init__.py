"""Domain services: rubric model, grading, ledger, exam attempts and aggregation."""

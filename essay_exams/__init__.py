"""Essay assignment, AI-assisted grading and proctored timed exams."""

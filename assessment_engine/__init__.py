"""Assessment session engine: timed exam and quiz attempts, autosave and grading."""

"""HTTP surface for the invocation workflow engine."""

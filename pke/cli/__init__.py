"""Command-line helpers for inspecting engine state."""

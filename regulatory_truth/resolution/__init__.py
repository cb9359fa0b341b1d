"""Conflict resolution: engine, escalation, oracle, audit and workflow."""

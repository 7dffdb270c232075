"""Grievance lifecycle and step-deadline engine."""

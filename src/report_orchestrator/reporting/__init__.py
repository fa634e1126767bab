"""Report templates, schedules, runs and their execution pipeline."""

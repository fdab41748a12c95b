"""Graph model, validation, conditions, retry and run orchestration."""

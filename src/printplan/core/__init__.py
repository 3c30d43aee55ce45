"""Calendar, color keys, domain models and the planning event log."""

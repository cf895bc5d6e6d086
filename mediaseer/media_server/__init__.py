"""Media server integrations."""

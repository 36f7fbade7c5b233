"""Certificate assembly services."""

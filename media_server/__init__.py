"""Media conversion HTTP service."""

"""HTTP surface and job engine."""

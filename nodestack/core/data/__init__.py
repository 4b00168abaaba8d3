"""Data files bundled with the package (profile catalog)."""

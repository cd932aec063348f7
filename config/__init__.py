"""Backend configuration (pydantic-settings)."""

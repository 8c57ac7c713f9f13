from services.removal.client import RemoveBgClient  # noqa: F401

__all__ = ["RemoveBgClient"]

from src.core.customers.models import Customer, normalize_email

__all__ = ["Customer", "normalize_email"]

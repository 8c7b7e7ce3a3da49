"""adsift package"""

from .verdict import Category, Verdict

__all__ = ["Category", "Verdict"]

from .mock_marketplace import MockMarketplace

__all__ = ["MockMarketplace"]
